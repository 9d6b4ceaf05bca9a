from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from oppflow.context import enter_trigger, exit_trigger, get_correlation_id, get_trigger_depth
from oppflow.crm.models import CRMActivity, utcnow
from oppflow.crm.schemas import EmailMessage
from oppflow.crm.triggers.context import TriggerContext, TriggerOperation, TriggerPhase
from oppflow.crm.triggers.errors import ContractViolationError, NotificationDeliveryError
from oppflow.crm.triggers.gateways import LookupGateway, MutationSink, NotificationGateway
from oppflow.crm.triggers.results import DeliveryResult, RecordResult, TriggerOutcome
from oppflow.metrics import observe_notification_failure, observe_trigger_rejection, observe_trigger_run


logger = logging.getLogger("oppflow.crm.triggers")
tracer = trace.get_tracer("oppflow.crm.triggers")

DEFAULT_OPPORTUNITY_TYPE = "New Customer"
CLOSED_DELETE_REJECTION = "Cannot delete closed opportunity"
FOLLOW_UP_TASK_SUBJECT = "Call Primary Contact"
FOLLOW_UP_DUE_IN_DAYS = 3
PRIMARY_CONTACT_TITLE = "VP Sales"
STAGE_CHANGE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(slots=True)
class OpportunityTriggerHandler:
    """Routes one opportunity batch to the rule for its phase and operation.

    Every rule is bulk-safe: at most one lookup and at most one write or
    send per run, whatever the batch size.
    """

    lookup: LookupGateway
    sink: MutationSink
    notifier: NotificationGateway
    clock: Callable[[], datetime] = field(default=utcnow)

    def run(self, ctx: TriggerContext) -> TriggerOutcome:
        if get_trigger_depth() > 0:
            raise ContractViolationError("opportunity trigger invoked re-entrantly")
        ctx.validate()

        phase = ctx.phase.value
        operation = ctx.operation.value
        token = enter_trigger()
        started = time.perf_counter()
        final_status = "Failed"

        with tracer.start_as_current_span("crm.trigger.run") as span:
            span.set_attribute("phase", phase)
            span.set_attribute("operation", operation)
            span.set_attribute("batch_size", len(ctx.new))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            logger.info(
                "trigger.started",
                extra={"phase": phase, "operation": operation, "batch_size": len(ctx.new)},
            )
            try:
                outcome = self._dispatch(ctx)
                final_status = "Succeeded"
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.error(
                    "trigger.failed",
                    extra={
                        "phase": phase,
                        "operation": operation,
                        "batch_size": len(ctx.new),
                        "error": str(exc),
                    },
                )
                raise
            finally:
                observe_trigger_run(phase, operation, final_status, time.perf_counter() - started)
                exit_trigger(token)

            logger.info(
                "trigger.finished",
                extra={
                    "phase": phase,
                    "operation": operation,
                    "batch_size": len(ctx.new),
                    "rejected_count": len(outcome.rejected),
                    "status": final_status,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            return outcome

    def _dispatch(self, ctx: TriggerContext) -> TriggerOutcome:
        if ctx.phase is TriggerPhase.BEFORE:
            if ctx.operation is TriggerOperation.INSERT:
                return self._default_type(ctx)
            if ctx.operation is TriggerOperation.UPDATE:
                return self._annotate_stage_change(ctx)
            if ctx.operation is TriggerOperation.DELETE:
                return self._guard_closed_deletes(ctx)
        else:
            if ctx.operation is TriggerOperation.INSERT:
                return self._create_follow_up_tasks(ctx)
            if ctx.operation is TriggerOperation.DELETE:
                return self._notify_owners_of_deletion(ctx)
            if ctx.operation is TriggerOperation.UNDELETE:
                return self._assign_primary_contacts(ctx)
        return TriggerOutcome()

    def _default_type(self, ctx: TriggerContext) -> TriggerOutcome:
        for opportunity in ctx.new:
            if opportunity.type is None:
                opportunity.type = DEFAULT_OPPORTUNITY_TYPE
        return TriggerOutcome()

    def _annotate_stage_change(self, ctx: TriggerContext) -> TriggerOutcome:
        stamp = self.clock().strftime(STAGE_CHANGE_TIMESTAMP_FORMAT)
        for opportunity in ctx.new:
            prior = ctx.prior(opportunity.id)
            if opportunity.stage_name is None or opportunity.stage_name == prior.stage_name:
                continue
            opportunity.description = f"{opportunity.description or ''}\n Stage Change:{opportunity.stage_name}:{stamp}"
        return TriggerOutcome()

    def _guard_closed_deletes(self, ctx: TriggerContext) -> TriggerOutcome:
        results = [
            RecordResult.reject(opportunity.id, CLOSED_DELETE_REJECTION)
            if opportunity.is_closed
            else RecordResult.admit(opportunity.id)
            for opportunity in ctx.new
        ]
        outcome = TriggerOutcome(record_results=results)
        observe_trigger_rejection(CLOSED_DELETE_REJECTION, len(outcome.rejected))
        return outcome

    def _create_follow_up_tasks(self, ctx: TriggerContext) -> TriggerOutcome:
        due_date = self.clock().date() + timedelta(days=FOLLOW_UP_DUE_IN_DAYS)
        tasks = [
            CRMActivity(
                id=uuid.uuid4(),
                entity_type="opportunity",
                entity_id=opportunity.id,
                activity_type="Task",
                subject=FOLLOW_UP_TASK_SUBJECT,
                contact_id=opportunity.primary_contact_id,
                owner_user_id=opportunity.owner_user_id,
                due_date=due_date,
                status="Open",
            )
            for opportunity in ctx.new
        ]
        if not tasks:
            return TriggerOutcome()
        return TriggerOutcome(save_results=self.sink.insert("activity", tasks))

    def _notify_owners_of_deletion(self, ctx: TriggerContext) -> TriggerOutcome:
        owner_ids = {opportunity.owner_user_id for opportunity in ctx.new if opportunity.owner_user_id is not None}
        if not owner_ids:
            return TriggerOutcome()
        owners = self.lookup.resolve("user", owner_ids)

        messages: list[EmailMessage] = []
        for opportunity in ctx.new:
            owner = owners.get(opportunity.owner_user_id)
            if owner is None or owner.email is None:
                continue
            messages.append(
                EmailMessage(
                    to_addresses=[owner.email],
                    subject=f"Opportunity Deleted : {opportunity.name}",
                    body=f"Your Opportunity: {opportunity.name} has been deleted.",
                )
            )
        if not messages:
            return TriggerOutcome()

        delivery = self._deliver(messages)
        if not delivery.delivered:
            observe_notification_failure()
            logger.warning(
                "trigger.notification_failed",
                extra={
                    "phase": ctx.phase.value,
                    "operation": ctx.operation.value,
                    "message_count": delivery.message_count,
                    "sent_count": delivery.sent_count,
                    "error": delivery.error,
                },
            )
        return TriggerOutcome(delivery=delivery)

    def _deliver(self, messages: list[EmailMessage]) -> DeliveryResult:
        try:
            self.notifier.send(messages)
        except NotificationDeliveryError as exc:
            return DeliveryResult(message_count=len(messages), error=str(exc), sent_count=exc.sent_count)
        return DeliveryResult(message_count=len(messages), sent_count=len(messages))

    def _assign_primary_contacts(self, ctx: TriggerContext) -> TriggerOutcome:
        eligible = [
            opportunity
            for opportunity in ctx.new
            if opportunity.primary_contact_id is None and opportunity.account_id is not None
        ]
        if not eligible:
            return TriggerOutcome()

        contacts = self.lookup.resolve(
            "contact",
            {opportunity.account_id for opportunity in eligible},
            key="account_id",
            filters={"title": PRIMARY_CONTACT_TITLE},
        )
        # No ordering is imposed on the lookup: when an account has several
        # matching contacts, whichever is seen last wins.
        contact_by_account: dict[uuid.UUID, uuid.UUID] = {}
        for contact in contacts.values():
            contact_by_account[contact.account_id] = contact.id

        updates = [
            {"id": opportunity.id, "primary_contact_id": contact_by_account[opportunity.account_id]}
            for opportunity in eligible
            if opportunity.account_id in contact_by_account
        ]
        if not updates:
            return TriggerOutcome()
        return TriggerOutcome(save_results=self.sink.update("opportunity", updates))
