from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum

from oppflow.crm.models import CRMOpportunity
from oppflow.crm.schemas import OpportunitySnapshot
from oppflow.crm.triggers.errors import ContractViolationError


class TriggerPhase(StrEnum):
    BEFORE = "before"
    AFTER = "after"


class TriggerOperation(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UNDELETE = "undelete"


@dataclass(slots=True)
class TriggerContext:
    """One invocation's view of the batch being processed.

    ``new`` holds the in-flight rows, in the order the host received them.
    Before-phase rules edit these rows in place and the host persists the
    edits with the same flush. ``old_map`` is only populated for updates.
    """

    phase: TriggerPhase
    operation: TriggerOperation
    new: list[CRMOpportunity]
    old_map: dict[uuid.UUID, OpportunitySnapshot] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.new:
            raise ContractViolationError("trigger batch must not be empty")

        seen: set[uuid.UUID] = set()
        for record in self.new:
            if record.id is None:
                raise ContractViolationError("trigger batch contains a record without an id")
            if record.id in seen:
                raise ContractViolationError(f"duplicate record id in trigger batch: {record.id}")
            seen.add(record.id)

        if self.operation is TriggerOperation.UPDATE:
            missing = [str(record_id) for record_id in seen if record_id not in self.old_map]
            if missing:
                raise ContractViolationError(f"missing prior state for records: {', '.join(sorted(missing))}")

    def prior(self, record_id: uuid.UUID) -> OpportunitySnapshot:
        snapshot = self.old_map.get(record_id)
        if snapshot is None:
            raise ContractViolationError(f"missing prior state for record: {record_id}")
        return snapshot
