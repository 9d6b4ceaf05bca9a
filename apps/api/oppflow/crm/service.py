from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from oppflow.core.config import get_settings
from oppflow.crm.models import CLOSED_STAGE_NAMES, CRMOpportunity, utcnow
from oppflow.crm.schemas import (
    OpportunityCreate,
    OpportunityDeleteResult,
    OpportunityRead,
    OpportunitySnapshot,
    OpportunityUpdate,
)
from oppflow.crm.triggers import (
    NotificationGateway,
    OpportunityTriggerHandler,
    SqlLookupGateway,
    SqlMutationSink,
    TriggerContext,
    TriggerOperation,
    TriggerPhase,
    get_notification_gateway,
)


logger = logging.getLogger("oppflow.crm.service")


class OpportunityService:
    """Host side of the opportunity triggers.

    Owns the transaction: before-phase rules edit rows that are flushed with
    the operation itself, after-phase rules write through gateways bound to
    the same session, and everything commits (or rolls back) together.
    """

    entity_type = "crm.opportunity"

    def __init__(self, notifier_factory: Callable[[], NotificationGateway] | None = None) -> None:
        self._notifier_factory = notifier_factory or (lambda: get_notification_gateway(get_settings()))

    def create_opportunities(self, session: Session, dtos: Sequence[OpportunityCreate]) -> list[OpportunityRead]:
        if not dtos:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="at least one opportunity is required")
        opportunities = [
            CRMOpportunity(
                id=uuid.uuid4(),
                name=dto.name.strip(),
                type=dto.type,
                stage_name=dto.stage_name,
                description=dto.description,
                is_closed=dto.stage_name in CLOSED_STAGE_NAMES,
                owner_user_id=dto.owner_user_id,
                primary_contact_id=dto.primary_contact_id,
                account_id=dto.account_id,
            )
            for dto in dtos
        ]
        triggers = self._triggers(session)
        try:
            triggers.run(TriggerContext(TriggerPhase.BEFORE, TriggerOperation.INSERT, opportunities))
            session.add_all(opportunities)
            session.flush()
            triggers.run(TriggerContext(TriggerPhase.AFTER, TriggerOperation.INSERT, opportunities))
            session.commit()
        except Exception:
            session.rollback()
            raise

        return self._to_read_many(session, [opportunity.id for opportunity in opportunities])

    def update_opportunities(self, session: Session, dtos: Sequence[OpportunityUpdate]) -> list[OpportunityRead]:
        ids = [dto.id for dto in dtos]
        self._ensure_batch(ids)
        opportunities = self._load(session, ids, deleted=False)
        by_id = {opportunity.id: opportunity for opportunity in opportunities}

        old_map = {
            opportunity.id: OpportunitySnapshot.model_validate(opportunity) for opportunity in opportunities
        }
        for dto in dtos:
            opportunity = by_id[dto.id]
            for field_name, value in dto.model_dump(exclude_unset=True, exclude={"id"}).items():
                setattr(opportunity, field_name, value)
            opportunity.is_closed = opportunity.stage_name in CLOSED_STAGE_NAMES

        triggers = self._triggers(session)
        try:
            triggers.run(TriggerContext(TriggerPhase.BEFORE, TriggerOperation.UPDATE, opportunities, old_map))
            session.flush()
            triggers.run(TriggerContext(TriggerPhase.AFTER, TriggerOperation.UPDATE, opportunities, old_map))
            session.commit()
        except Exception:
            session.rollback()
            raise

        return self._to_read_many(session, ids)

    def delete_opportunities(self, session: Session, ids: Sequence[uuid.UUID]) -> list[OpportunityDeleteResult]:
        self._ensure_batch(ids)
        opportunities = self._load(session, ids, deleted=False)

        triggers = self._triggers(session)
        try:
            guard = triggers.run(TriggerContext(TriggerPhase.BEFORE, TriggerOperation.DELETE, opportunities))
            rejected = guard.rejected
            admitted = [opportunity for opportunity in opportunities if opportunity.id not in rejected]

            deleted_at = utcnow()
            for opportunity in admitted:
                opportunity.deleted_at = deleted_at
            session.flush()

            if admitted:
                triggers.run(TriggerContext(TriggerPhase.AFTER, TriggerOperation.DELETE, admitted))
            session.commit()
        except Exception:
            session.rollback()
            raise

        if rejected:
            logger.info(
                "opportunity.delete_rejected",
                extra={"operation": "delete", "batch_size": len(ids), "rejected_count": len(rejected)},
            )
        return [
            OpportunityDeleteResult(id=record_id, deleted=record_id not in rejected, error=rejected.get(record_id))
            for record_id in ids
        ]

    def undelete_opportunities(self, session: Session, ids: Sequence[uuid.UUID]) -> list[OpportunityRead]:
        self._ensure_batch(ids)
        opportunities = self._load(session, ids, deleted=True)

        triggers = self._triggers(session)
        try:
            triggers.run(TriggerContext(TriggerPhase.BEFORE, TriggerOperation.UNDELETE, opportunities))
            for opportunity in opportunities:
                opportunity.deleted_at = None
            session.flush()
            triggers.run(TriggerContext(TriggerPhase.AFTER, TriggerOperation.UNDELETE, opportunities))
            session.commit()
        except Exception:
            session.rollback()
            raise

        return self._to_read_many(session, ids)

    def get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        opportunity = session.scalar(
            select(CRMOpportunity).where(CRMOpportunity.id == opportunity_id, CRMOpportunity.deleted_at.is_(None))
        )
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        return OpportunityRead.model_validate(opportunity)

    def _triggers(self, session: Session) -> OpportunityTriggerHandler:
        return OpportunityTriggerHandler(
            lookup=SqlLookupGateway(session),
            sink=SqlMutationSink(session),
            notifier=self._notifier_factory(),
        )

    def _load(self, session: Session, ids: Sequence[uuid.UUID], *, deleted: bool) -> list[CRMOpportunity]:
        stmt = select(CRMOpportunity).where(CRMOpportunity.id.in_(list(ids)))
        if deleted:
            stmt = stmt.where(CRMOpportunity.deleted_at.is_not(None))
        else:
            stmt = stmt.where(CRMOpportunity.deleted_at.is_(None))
        rows = {row.id: row for row in session.scalars(stmt).all()}

        missing = [str(record_id) for record_id in ids if record_id not in rows]
        if missing:
            detail = "deleted opportunity not found" if deleted else "opportunity not found"
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{detail}: {', '.join(missing)}")
        return [rows[record_id] for record_id in ids]

    def _ensure_batch(self, ids: Sequence[uuid.UUID]) -> None:
        if not ids:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="at least one opportunity is required")
        if len(set(ids)) != len(ids):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="duplicate opportunity ids")

    def _to_read_many(self, session: Session, ids: Sequence[uuid.UUID]) -> list[OpportunityRead]:
        rows = {row.id: row for row in session.scalars(select(CRMOpportunity).where(CRMOpportunity.id.in_(list(ids))))}
        return [OpportunityRead.model_validate(rows[record_id]) for record_id in ids]


opportunity_service = OpportunityService()
