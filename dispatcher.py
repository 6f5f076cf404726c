"""Broadcast fan-out: one payload, every active subscription, in parallel."""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass

from pywebpush import WebPushException, webpush

from config import VapidCredentials
from errors import ConfigurationError, DeliveryFailed
from registry import SubscriptionRegistry
from subscriptions import SubscriptionDescriptor

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Notificação"
DEFAULT_BODY = "Mensagem"
DEFAULT_URL = "/"


@dataclass(frozen=True)
class BroadcastResult:
    sent: int
    failed: int
    total: int
    deactivated: int = 0

    def to_response(self) -> dict:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "total": self.total,
            "deactivated": self.deactivated,
        }


class WebPushTransport:
    """Delivers payload bytes to one browser push service via pywebpush."""

    def __init__(self, vapid: VapidCredentials, ttl: int = 300, timeout: int = 12):
        self.vapid = vapid
        self.ttl = ttl
        self.timeout = timeout

    def send(self, sub: SubscriptionDescriptor, data: bytes) -> None:
        try:
            webpush(
                subscription_info=sub.subscription_info(),
                data=data,
                vapid_private_key=self.vapid.private_key,
                vapid_claims={"sub": self.vapid.subject},
                ttl=self.ttl,
                timeout=self.timeout,
            )
        except WebPushException as e:
            status = getattr(getattr(e, "response", None), "status_code", None)
            raise DeliveryFailed(sub.endpoint, status, str(e)) from e


def build_payload(title: str, body: str, url: str, now_ms: int | None = None) -> dict:
    """Notification payload shared by every recipient of one broadcast.

    The tag is unique per broadcast so a newer broadcast replaces an older one
    still on screen; ``renotify`` makes the replacement alert again.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return {
        "title": title,
        "body": body,
        "data": {"url": url},
        "tag": f"global-{now_ms}",
        "renotify": True,
    }


@dataclass(frozen=True)
class _Outcome:
    endpoint: str
    ok: bool
    expired: bool = False


class BroadcastDispatcher:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        vapid: VapidCredentials | None,
        transport=None,
        max_workers: int = 32,
        ttl: int = 300,
        timeout: int = 12,
    ):
        self.registry = registry
        self.vapid = vapid
        self.max_workers = max(1, max_workers)
        self._transport = transport
        self._ttl = ttl
        self._timeout = timeout

    def _get_transport(self):
        if self._transport is None:
            self._transport = WebPushTransport(self.vapid, ttl=self._ttl, timeout=self._timeout)
        return self._transport

    def _deliver(self, transport, sub: SubscriptionDescriptor, data: bytes) -> _Outcome:
        try:
            transport.send(sub, data)
            return _Outcome(sub.endpoint, ok=True)
        except DeliveryFailed as e:
            logger.info("Push to %s failed (status=%s)", sub.endpoint[:60], e.status_code)
            return _Outcome(sub.endpoint, ok=False, expired=e.expired)
        except Exception:
            logger.exception("Unexpected error pushing to %s", sub.endpoint[:60])
            return _Outcome(sub.endpoint, ok=False)

    def broadcast_all(
        self,
        title: str = DEFAULT_TITLE,
        body: str = DEFAULT_BODY,
        url: str = DEFAULT_URL,
    ) -> BroadcastResult:
        """Send one message to every active subscription.

        Raises ConfigurationError, before reading the registry or contacting
        anyone, when the VAPID key pair is incomplete. Otherwise blocks until
        every delivery attempt has finished and returns the tally.
        """
        if self.vapid is None or not self.vapid.is_complete:
            raise ConfigurationError("VAPID keys missing")

        transport = self._get_transport()
        data = json.dumps(build_payload(title, body, url)).encode("utf-8")

        subs = self.registry.list_active()
        total = len(subs)
        if not subs:
            logger.info("Broadcast skipped: no active subscriptions")
            return BroadcastResult(sent=0, failed=0, total=0)

        sent = failed = 0
        expired: list[str] = []
        with ThreadPoolExecutor(max_workers=min(total, self.max_workers), thread_name_prefix="push") as pool:
            futures = [pool.submit(self._deliver, transport, sub, data) for sub in subs]
            for fut in as_completed(futures):
                outcome = fut.result()
                if outcome.ok:
                    sent += 1
                else:
                    failed += 1
                    if outcome.expired:
                        expired.append(outcome.endpoint)

        deactivated = sum(1 for endpoint in expired if self.registry.deactivate(endpoint))

        logger.info(
            "Broadcast done: sent=%d failed=%d total=%d deactivated=%d",
            sent, failed, total, deactivated,
        )
        return BroadcastResult(sent=sent, failed=failed, total=total, deactivated=deactivated)
