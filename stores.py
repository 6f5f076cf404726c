"""Subscription storage: the durable SQL backend and the in-process fallback."""

from __future__ import annotations

import enum
import json
import logging
import threading
from typing import Any, Sequence

from sqlalchemy import Text, delete, insert, select, type_coerce, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from errors import DurableReadFailed, DurableWriteFailed, InvalidSubscription
from models_push import document_metadata, document_table, structured_metadata, structured_table
from subscriptions import SubscriptionDescriptor, parse_subscription, utcnow

logger = logging.getLogger(__name__)


class StorageOutcome(str, enum.Enum):
    DURABLE_DOCUMENT = "durable-document"
    DURABLE_STRUCTURED = "durable-structured"
    FALLBACK = "fallback"

    @property
    def is_durable(self) -> bool:
        return self is not StorageOutcome.FALLBACK


# -------------------------------
# In-process fallback
# -------------------------------

class MemoryStore:
    """Process-lifetime map of endpoint -> descriptor.

    Construct one per process and hand it to the registry; nothing is
    persisted and the contents vanish on restart.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subs: dict[str, SubscriptionDescriptor] = {}

    def put(self, sub: SubscriptionDescriptor) -> None:
        with self._lock:
            self._subs[sub.endpoint] = sub

    def discard(self, endpoint: str) -> None:
        with self._lock:
            self._subs.pop(endpoint, None)

    def deactivate(self, endpoint: str) -> bool:
        with self._lock:
            sub = self._subs.get(endpoint)
            if sub is None or not sub.is_active:
                return False
            self._subs[endpoint] = sub.deactivated()
            return True

    def get(self, endpoint: str) -> SubscriptionDescriptor | None:
        with self._lock:
            return self._subs.get(endpoint)

    def values(self) -> list[SubscriptionDescriptor]:
        with self._lock:
            return list(self._subs.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._subs)


# -------------------------------
# Durable schema shapes
# -------------------------------

def _owner_values(sub: SubscriptionDescriptor) -> dict:
    # Only send user_id when there is one, so tables without the column
    # still accept anonymous subscriptions.
    return {"user_id": sub.owner_id} if sub.owner_id else {}


def _decode_document(raw: Any) -> Any:
    # Some drivers (psycopg2 on json/jsonb) hand back the decoded value.
    if isinstance(raw, (bytes, str)):
        return json.loads(raw)
    return raw


class DocumentShape:
    """``subscription`` JSON column plus ``is_active``/``updated_at``/``user_id``."""

    outcome = StorageOutcome.DURABLE_DOCUMENT
    table = document_table
    metadata = document_metadata

    def _match(self, endpoint: str):
        return self.table.c.subscription["endpoint"].as_string() == endpoint

    def write(self, conn: Connection, sub: SubscriptionDescriptor) -> None:
        conn.execute(delete(self.table).where(self._match(sub.endpoint)))
        conn.execute(
            insert(self.table).values(
                subscription=sub.to_document(),
                is_active=sub.is_active,
                updated_at=sub.updated_at,
                **_owner_values(sub),
            )
        )

    def read_active(self, conn: Connection) -> list[SubscriptionDescriptor]:
        t = self.table
        # Fetched as text and decoded per row, so one corrupt document
        # is skipped instead of failing the whole read.
        raw = type_coerce(t.c.subscription, Text).label("subscription")
        rows = conn.execute(
            select(raw, t.c.updated_at)
            .where(t.c.is_active.is_(True))
            .where(t.c.subscription.is_not(None))
            .order_by(t.c.updated_at)
        ).all()
        subs = []
        for row in rows:
            try:
                doc = _decode_document(row.subscription)
                subs.append(parse_subscription(doc, updated_at=row.updated_at))
            except ValueError:
                logger.warning("Skipping stored document that is not valid JSON")
            except InvalidSubscription:
                logger.debug("Skipping stored document without endpoint")
        return subs

    def deactivate(self, conn: Connection, endpoint: str) -> int:
        result = conn.execute(
            update(self.table)
            .where(self._match(endpoint))
            .where(self.table.c.is_active.is_(True))
            .values(is_active=False, updated_at=utcnow())
        )
        return result.rowcount or 0


class StructuredShape:
    """Discrete ``endpoint``/``p256dh_key``/``auth_key`` columns."""

    outcome = StorageOutcome.DURABLE_STRUCTURED
    table = structured_table
    metadata = structured_metadata

    def write(self, conn: Connection, sub: SubscriptionDescriptor) -> None:
        conn.execute(delete(self.table).where(self.table.c.endpoint == sub.endpoint))
        conn.execute(
            insert(self.table).values(
                endpoint=sub.endpoint,
                p256dh_key=sub.p256dh_key,
                auth_key=sub.auth_key,
                is_active=sub.is_active,
                updated_at=sub.updated_at,
                **_owner_values(sub),
            )
        )

    def _select_active(self, *extra):
        t = self.table
        return (
            select(t.c.endpoint, t.c.p256dh_key, t.c.auth_key, t.c.updated_at, *extra)
            .where(t.c.is_active.is_(True))
            .where(t.c.endpoint.is_not(None))
            .order_by(t.c.updated_at)
        )

    def read_active(self, conn: Connection) -> list[SubscriptionDescriptor]:
        # user_id is optional in this shape: older tables do not have it.
        try:
            rows = conn.execute(self._select_active(self.table.c.user_id)).all()
        except SQLAlchemyError as e:
            logger.debug("Structured read without user_id: %s", _short(e))
            conn.rollback()
            rows = conn.execute(self._select_active()).all()
        subs = []
        for row in rows:
            fields = row._mapping
            try:
                subs.append(
                    parse_subscription(
                        {
                            "endpoint": fields["endpoint"],
                            "p256dh_key": fields["p256dh_key"],
                            "auth_key": fields["auth_key"],
                            "user_id": fields.get("user_id"),
                        },
                        updated_at=fields["updated_at"],
                    )
                )
            except InvalidSubscription:
                logger.debug("Skipping stored row without endpoint")
        return subs

    def deactivate(self, conn: Connection, endpoint: str) -> int:
        result = conn.execute(
            update(self.table)
            .where(self.table.c.endpoint == endpoint)
            .where(self.table.c.is_active.is_(True))
            .values(is_active=False, updated_at=utcnow())
        )
        return result.rowcount or 0


DEFAULT_SHAPES = (DocumentShape(), StructuredShape())


class DurableStore:
    """SQL-backed subscription table of unknown shape.

    Writes try each shape in order and stop at the first that the backend
    accepts; every attempt runs in its own transaction, so a rejected shape
    leaves nothing behind.
    """

    def __init__(self, engine: Engine, shapes: Sequence = DEFAULT_SHAPES):
        self.engine = engine
        self.shapes = tuple(shapes)

    def create_tables(self, shape=None) -> None:
        """Create the table in ``shape`` (document by default) if it is missing."""
        shape = shape or self.shapes[0]
        shape.metadata.create_all(self.engine, checkfirst=True)

    def write(self, sub: SubscriptionDescriptor) -> StorageOutcome:
        errors: list[Exception] = []
        for shape in self.shapes:
            try:
                with self.engine.begin() as conn:
                    shape.write(conn, sub)
                return shape.outcome
            except SQLAlchemyError as e:
                logger.info("Durable write (%s) rejected: %s", shape.outcome.value, _short(e))
                errors.append(e)
        raise DurableWriteFailed("No schema shape accepted the write", errors)

    def list_active(self) -> list[SubscriptionDescriptor]:
        subs: list[SubscriptionDescriptor] = []
        errors: list[Exception] = []
        for shape in self.shapes:
            try:
                with self.engine.connect() as conn:
                    subs.extend(shape.read_active(conn))
            except SQLAlchemyError as e:
                logger.debug("Durable read (%s) failed: %s", shape.outcome.value, _short(e))
                errors.append(e)
        if len(errors) == len(self.shapes):
            raise DurableReadFailed("No schema shape could be read", errors)
        return subs

    def deactivate(self, endpoint: str) -> int:
        changed = 0
        errors: list[Exception] = []
        for shape in self.shapes:
            try:
                with self.engine.begin() as conn:
                    changed += shape.deactivate(conn, endpoint)
            except SQLAlchemyError as e:
                errors.append(e)
        if len(errors) == len(self.shapes):
            raise DurableWriteFailed("No schema shape accepted the update", errors)
        return changed


def _short(e: Exception) -> str:
    # SQLAlchemy messages carry the full statement; the first line is enough.
    return str(e).partition("\n")[0][:200]
