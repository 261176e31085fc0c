from __future__ import annotations


class SupplyHubError(Exception):
    """Base class for domain errors raised by supplyhub services."""


class ValidationError(SupplyHubError):
    """Raised when caller input is rejected before any state change."""


class NotFoundError(SupplyHubError):
    """Raised when a referenced record does not exist."""

    def __init__(self, resource: str, key: object) -> None:
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} '{key}' not found")


class ConflictError(SupplyHubError):
    """Raised when a business invariant would be violated."""


class ConcurrencyConflict(ConflictError):
    """Raised when a conditional status update matched no row.

    The caller must re-read the record and decide whether to retry or abandon.
    """

    def __init__(self, entity: str, entity_id: object, expected: str, actual: str | None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"{entity} {entity_id}: expected status '{expected}' but found '{actual}'")


class MalformedInput(SupplyHubError):
    """Raised when an inbound message cannot be parsed; the message is dead-lettered."""

    def __init__(self, message_id: str, reason: str) -> None:
        self.message_id = message_id
        self.reason = reason
        super().__init__(f"message {message_id} is malformed: {reason}")


class TransientExternalFailure(SupplyHubError):
    """Raised by hub gateways for retryable failures such as server-busy responses."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class AuthenticationFailure(TransientExternalFailure):
    """Raised when the hub rejects the access token."""


class DataIncompleteError(SupplyHubError):
    """Raised when a period lacks metering, price or tariff coverage."""

    def __init__(self, metering_point_id: str, missing: list[str]) -> None:
        self.metering_point_id = metering_point_id
        self.missing = missing
        preview = ", ".join(missing[:5])
        more = f" (+{len(missing) - 5} more)" if len(missing) > 5 else ""
        super().__init__(f"incomplete data for {metering_point_id}: {preview}{more}")
