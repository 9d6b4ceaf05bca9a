from __future__ import annotations


class TriggerError(Exception):
    """Base error for opportunity trigger runs."""


class ContractViolationError(TriggerError):
    """Raised when a trigger is invoked with a batch that breaks the invocation contract."""


class MutationSinkError(TriggerError):
    """Raised when a batched insert or update issued by a trigger fails."""

    def __init__(self, entity_kind: str, operation: str, message: str) -> None:
        self.entity_kind = entity_kind
        self.operation = operation
        super().__init__(f"{operation} of {entity_kind} records failed: {message}")


class NotificationDeliveryError(TriggerError):
    """Raised by notification gateways when a batch of messages cannot be delivered.

    ``sent_count`` is how many messages of the batch went out before the failure.
    """

    def __init__(self, message: str, sent_count: int = 0) -> None:
        self.sent_count = sent_count
        super().__init__(message)
