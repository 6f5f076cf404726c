"""Subscription descriptors: normalization, deliverability and dedup."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from errors import InvalidSubscription


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime:
    if value is None:
        return utcnow()
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True)
class SubscriptionDescriptor:
    endpoint: str
    auth_key: str = ""
    p256dh_key: str = ""
    owner_id: str | None = None
    is_active: bool = True
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_deliverable(self) -> bool:
        return bool(self.endpoint and self.auth_key and self.p256dh_key)

    def to_document(self) -> dict:
        """Canonical JSON form stored in the document-shape column."""
        doc: dict[str, Any] = {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.p256dh_key, "auth": self.auth_key},
        }
        if self.owner_id:
            doc["userId"] = self.owner_id
        return doc

    def subscription_info(self) -> dict:
        """The shape pywebpush expects for ``subscription_info``."""
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.p256dh_key, "auth": self.auth_key},
        }

    def deactivated(self) -> "SubscriptionDescriptor":
        return replace(self, is_active=False, updated_at=utcnow())


def parse_subscription(
    payload: Any,
    *,
    is_active: bool = True,
    updated_at: datetime | None = None,
) -> SubscriptionDescriptor:
    """Normalize a client payload into a :class:`SubscriptionDescriptor`.

    Accepts the browser's ``PushSubscription.toJSON()`` shape (credentials
    nested under ``keys``), the flat ``p256dh_key``/``auth_key`` shape, and a
    ``{"userId": ..., "subscription": {...}}`` wrapper. Nested credentials
    win over flat ones. Raises :class:`InvalidSubscription` when the payload
    is not an object or carries no endpoint; missing credentials are allowed
    and simply leave the descriptor undeliverable.
    """
    if not isinstance(payload, Mapping):
        raise InvalidSubscription("Subscription payload must be a JSON object")

    owner = payload.get("userId") or payload.get("user_id")
    inner = payload.get("subscription")
    if isinstance(inner, Mapping) and not payload.get("endpoint"):
        owner = owner or inner.get("userId") or inner.get("user_id")
        payload = inner

    endpoint = _clean(payload.get("endpoint"))
    if not endpoint:
        raise InvalidSubscription("Missing endpoint")

    keys = payload.get("keys")
    if not isinstance(keys, Mapping):
        keys = {}

    return SubscriptionDescriptor(
        endpoint=endpoint,
        auth_key=_clean(keys.get("auth") or payload.get("auth_key")),
        p256dh_key=_clean(keys.get("p256dh") or payload.get("p256dh_key")),
        owner_id=_clean(owner) or None,
        is_active=bool(is_active),
        updated_at=_as_utc(updated_at),
    )


def latest_by_endpoint(descriptors: Iterable[SubscriptionDescriptor]) -> list[SubscriptionDescriptor]:
    """Collapse descriptors to one per endpoint; the newest write wins.

    Ties on ``updated_at`` keep input order, so later entries still win.
    """
    ordered = sorted(descriptors, key=lambda d: _as_utc(d.updated_at))
    latest: dict[str, SubscriptionDescriptor] = {}
    for d in ordered:
        latest[d.endpoint] = d
    return list(latest.values())
