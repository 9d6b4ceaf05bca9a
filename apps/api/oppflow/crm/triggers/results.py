from __future__ import annotations

import uuid
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class RecordResult:
    record_id: uuid.UUID
    admitted: bool
    reason: str | None = None

    @classmethod
    def admit(cls, record_id: uuid.UUID) -> RecordResult:
        return cls(record_id=record_id, admitted=True)

    @classmethod
    def reject(cls, record_id: uuid.UUID, reason: str) -> RecordResult:
        return cls(record_id=record_id, admitted=False, reason=reason)


@dataclass(frozen=True, slots=True)
class SaveResult:
    record_id: uuid.UUID
    success: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Outcome of a best-effort send; a failure here never fails the trigger.

    A failed batch may still be partly delivered: ``sent_count`` counts the
    messages that went out.
    """

    message_count: int
    error: str | None = None
    sent_count: int = 0

    @property
    def delivered(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class TriggerOutcome:
    record_results: list[RecordResult] = field(default_factory=list)
    save_results: list[SaveResult] = field(default_factory=list)
    delivery: DeliveryResult | None = None

    @property
    def rejected(self) -> dict[uuid.UUID, str]:
        return {
            result.record_id: result.reason or ""
            for result in self.record_results
            if not result.admitted
        }
