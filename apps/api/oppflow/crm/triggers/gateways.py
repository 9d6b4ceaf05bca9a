from __future__ import annotations

import uuid
from collections.abc import Collection, Sequence
from typing import Any, Protocol

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from oppflow.context import get_correlation_id
from oppflow.core.database import Base
from oppflow.crm.models import CRMAccount, CRMActivity, CRMContact, CRMOpportunity, CRMUser
from oppflow.crm.schemas import EmailMessage
from oppflow.crm.triggers.errors import ContractViolationError, MutationSinkError
from oppflow.crm.triggers.results import SaveResult


tracer = trace.get_tracer("oppflow.crm.triggers.gateways")

ENTITY_MODELS: dict[str, type[Base]] = {
    "account": CRMAccount,
    "activity": CRMActivity,
    "contact": CRMContact,
    "opportunity": CRMOpportunity,
    "user": CRMUser,
}


def _model_for(entity_kind: str) -> type[Base]:
    model = ENTITY_MODELS.get(entity_kind)
    if model is None:
        raise ContractViolationError(f"unknown entity kind: {entity_kind}")
    return model


class LookupGateway(Protocol):
    def resolve(
        self,
        entity_kind: str,
        ids: Collection[uuid.UUID],
        *,
        key: str = "id",
        filters: dict[str, Any] | None = None,
    ) -> dict[uuid.UUID, Any]: ...


class MutationSink(Protocol):
    def insert(self, entity_kind: str, records: Sequence[Any]) -> list[SaveResult]: ...

    def update(self, entity_kind: str, partial_records: Sequence[dict[str, Any]]) -> list[SaveResult]: ...


class NotificationGateway(Protocol):
    def send(self, messages: Sequence[EmailMessage]) -> None: ...


class SqlLookupGateway:
    """Resolves related rows with a single ``IN`` query per call.

    ``key`` selects the column matched against ``ids``; the result is always
    keyed by primary key, in the order the database returned the rows.
    Soft-deleted rows are never returned.
    """

    def __init__(self, session: Session):
        self.session = session

    def resolve(
        self,
        entity_kind: str,
        ids: Collection[uuid.UUID],
        *,
        key: str = "id",
        filters: dict[str, Any] | None = None,
    ) -> dict[uuid.UUID, Any]:
        model = _model_for(entity_kind)
        if not ids:
            return {}

        column = getattr(model, key, None)
        if column is None:
            raise ContractViolationError(f"unknown lookup key for {entity_kind}: {key}")

        with tracer.start_as_current_span("crm.lookup.resolve") as span:
            span.set_attribute("entity_kind", entity_kind)
            span.set_attribute("id_count", len(ids))
            span.set_attribute("correlation_id", get_correlation_id() or "")

            stmt = select(model).where(column.in_(list(ids)))
            for field_name, value in (filters or {}).items():
                stmt = stmt.where(getattr(model, field_name) == value)
            if hasattr(model, "deleted_at"):
                stmt = stmt.where(model.deleted_at.is_(None))

            rows = self.session.scalars(stmt).all()
            return {row.id: row for row in rows}


class SqlMutationSink:
    """Writes trigger side effects into the caller's session.

    Nothing is committed here; the host owns the transaction, so a failed
    write rolls back together with the operation that triggered it.
    """

    def __init__(self, session: Session):
        self.session = session

    def insert(self, entity_kind: str, records: Sequence[Any]) -> list[SaveResult]:
        _model_for(entity_kind)
        if not records:
            return []

        with tracer.start_as_current_span("crm.mutation.insert") as span:
            span.set_attribute("entity_kind", entity_kind)
            span.set_attribute("record_count", len(records))
            try:
                self.session.add_all(records)
                self.session.flush()
            except SQLAlchemyError as exc:
                span.record_exception(exc)
                raise MutationSinkError(entity_kind, "insert", str(exc)) from exc

        return [SaveResult(record_id=record.id, success=True) for record in records]

    def update(self, entity_kind: str, partial_records: Sequence[dict[str, Any]]) -> list[SaveResult]:
        model = _model_for(entity_kind)
        if not partial_records:
            return []
        if any("id" not in partial for partial in partial_records):
            raise ContractViolationError(f"partial {entity_kind} updates require an id")

        with tracer.start_as_current_span("crm.mutation.update") as span:
            span.set_attribute("entity_kind", entity_kind)
            span.set_attribute("record_count", len(partial_records))
            try:
                self.session.execute(update(model), [dict(partial) for partial in partial_records])
                self.session.flush()
            except SQLAlchemyError as exc:
                span.record_exception(exc)
                raise MutationSinkError(entity_kind, "update", str(exc)) from exc

        return [SaveResult(record_id=partial["id"], success=True) for partial in partial_records]
