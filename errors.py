from __future__ import annotations


class PushError(Exception):
    """Base class for registry and broadcast failures."""


class InvalidSubscription(PushError):
    pass


class DurableWriteFailed(PushError):
    def __init__(self, message: str, causes: list[Exception] | None = None):
        super().__init__(message)
        self.causes = causes or []


class DurableReadFailed(PushError):
    def __init__(self, message: str, causes: list[Exception] | None = None):
        super().__init__(message)
        self.causes = causes or []


class ConfigurationError(PushError):
    pass


class DeliveryFailed(PushError):
    """A single recipient rejected (or never received) the message."""

    def __init__(self, endpoint: str, status_code: int | None = None, message: str = ""):
        super().__init__(message or f"delivery failed (status={status_code})")
        self.endpoint = endpoint
        self.status_code = status_code

    @property
    def expired(self) -> bool:
        # Push services answer 404/410 once a subscription is gone for good.
        return self.status_code in (404, 410)
