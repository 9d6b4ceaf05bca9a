from oppflow.crm.triggers.context import TriggerContext, TriggerOperation, TriggerPhase
from oppflow.crm.triggers.errors import (
    ContractViolationError,
    MutationSinkError,
    NotificationDeliveryError,
    TriggerError,
)
from oppflow.crm.triggers.gateways import (
    LookupGateway,
    MutationSink,
    NotificationGateway,
    SqlLookupGateway,
    SqlMutationSink,
)
from oppflow.crm.triggers.handler import OpportunityTriggerHandler
from oppflow.crm.triggers.notifications import (
    SmtpNotificationGateway,
    StubNotificationGateway,
    get_notification_gateway,
)
from oppflow.crm.triggers.results import DeliveryResult, RecordResult, SaveResult, TriggerOutcome

__all__ = [
    "TriggerContext",
    "TriggerOperation",
    "TriggerPhase",
    "TriggerError",
    "ContractViolationError",
    "MutationSinkError",
    "NotificationDeliveryError",
    "LookupGateway",
    "MutationSink",
    "NotificationGateway",
    "SqlLookupGateway",
    "SqlMutationSink",
    "SmtpNotificationGateway",
    "StubNotificationGateway",
    "get_notification_gateway",
    "OpportunityTriggerHandler",
    "RecordResult",
    "SaveResult",
    "DeliveryResult",
    "TriggerOutcome",
]
