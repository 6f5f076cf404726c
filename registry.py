"""Subscription registry: validated, deduplicated writes with an in-process fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from errors import DurableReadFailed, DurableWriteFailed
from stores import DurableStore, MemoryStore, StorageOutcome
from subscriptions import SubscriptionDescriptor, latest_by_endpoint, parse_subscription

logger = logging.getLogger(__name__)

REASON_NO_DURABLE_STORE = "no_supabase_client"
REASON_DURABLE_WRITE_ERROR = "supabase_insert_error"


@dataclass(frozen=True)
class RegisterResult:
    descriptor: SubscriptionDescriptor
    stored: StorageOutcome
    reason: str | None = None

    def to_response(self) -> dict:
        resp: dict[str, Any] = {
            "ok": True,
            "stored": "supabase" if self.stored.is_durable else "memory",
            "path": self.stored.value,
        }
        if self.reason:
            resp["reason"] = self.reason
        return resp


class SubscriptionRegistry:
    def __init__(self, fallback: MemoryStore, durable: DurableStore | None = None):
        self.fallback = fallback
        self.durable = durable

    def register(self, payload: Any) -> RegisterResult:
        """Normalize ``payload`` and record it, one row per endpoint.

        Raises InvalidSubscription when the payload has no endpoint. Any
        durable-store failure is absorbed: the subscription lands in the
        fallback store and the result says so.
        """
        sub = parse_subscription(payload)

        if self.durable is None:
            self.fallback.put(sub)
            return RegisterResult(sub, StorageOutcome.FALLBACK, REASON_NO_DURABLE_STORE)

        try:
            outcome = self.durable.write(sub)
        except DurableWriteFailed as e:
            logger.warning(
                "Durable write failed for %s (%d attempts); keeping it in memory",
                sub.endpoint[:60],
                len(e.causes),
            )
            self.fallback.put(sub)
            return RegisterResult(sub, StorageOutcome.FALLBACK, REASON_DURABLE_WRITE_ERROR)

        # The durable row supersedes anything parked in memory earlier.
        self.fallback.discard(sub.endpoint)
        logger.debug("Stored subscription %s via %s", sub.endpoint[:60], outcome.value)
        return RegisterResult(sub, outcome)

    def list_active(self) -> list[SubscriptionDescriptor]:
        """Every active, deliverable subscription, one per endpoint."""
        subs: list[SubscriptionDescriptor] = []
        if self.durable is not None:
            try:
                subs.extend(self.durable.list_active())
            except DurableReadFailed as e:
                logger.warning("Durable read failed (%d attempts); serving memory only", len(e.causes))

        # Inactive fallback entries still take part in dedup so that a newer
        # deactivation hides an older durable row.
        subs.extend(self.fallback.values())
        return [s for s in latest_by_endpoint(subs) if s.is_active and s.is_deliverable]

    def deactivate(self, endpoint: str) -> bool:
        """Mark ``endpoint`` inactive everywhere it is stored."""
        changed = self.fallback.deactivate(endpoint)
        if self.durable is not None:
            try:
                changed = self.durable.deactivate(endpoint) > 0 or changed
            except DurableWriteFailed:
                logger.warning("Could not deactivate %s in the durable store", endpoint[:60])
        return changed
