from __future__ import annotations

import smtplib
import uuid
from collections.abc import Generator
from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from oppflow.core.config import Settings
from oppflow.core.database import Base
from oppflow.crm.models import CRMAccount, CRMActivity, CRMContact, CRMOpportunity, CRMUser, utcnow
from oppflow.crm.schemas import EmailMessage
from oppflow.crm.triggers import (
    ContractViolationError,
    MutationSinkError,
    NotificationDeliveryError,
    OpportunityTriggerHandler,
    SmtpNotificationGateway,
    SqlLookupGateway,
    SqlMutationSink,
    StubNotificationGateway,
    TriggerContext,
    TriggerOperation,
    TriggerPhase,
    get_notification_gateway,
)
from oppflow.crm.triggers import notifications


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_sent_messages() -> Generator[None, None, None]:
    notifications.sent_messages.clear()
    yield
    notifications.sent_messages.clear()


@pytest.fixture()
def account(db_session: Session) -> CRMAccount:
    account = CRMAccount(name="Gateway Account")
    db_session.add(account)
    db_session.commit()
    return account


def _message(address: str = "owner@example.com") -> EmailMessage:
    return EmailMessage(to_addresses=[address], subject="Opportunity Deleted : Gateway", body="Your Opportunity: Gateway has been deleted.")


def test_lookup_resolves_by_id_and_skips_unknown_ids(db_session: Session) -> None:
    alice = CRMUser(full_name="Alice", email="alice@example.com")
    bob = CRMUser(full_name="Bob", email=None)
    db_session.add_all([alice, bob])
    db_session.commit()

    resolved = SqlLookupGateway(db_session).resolve("user", {alice.id, bob.id, uuid.uuid4()})

    assert set(resolved) == {alice.id, bob.id}
    assert resolved[alice.id].email == "alice@example.com"
    assert resolved[bob.id].email is None


def test_lookup_filters_by_key_and_excludes_soft_deleted_rows(db_session: Session, account: CRMAccount) -> None:
    vp = CRMContact(account_id=account.id, first_name="Vera", last_name="Price", title="VP Sales")
    buyer = CRMContact(account_id=account.id, first_name="Bo", last_name="Yer", title="Buyer")
    gone = CRMContact(account_id=account.id, first_name="Gone", last_name="Away", title="VP Sales", deleted_at=utcnow())
    db_session.add_all([vp, buyer, gone])
    db_session.commit()

    resolved = SqlLookupGateway(db_session).resolve(
        "contact",
        {account.id},
        key="account_id",
        filters={"title": "VP Sales"},
    )

    assert list(resolved) == [vp.id]


def test_lookup_with_no_ids_returns_empty_mapping(db_session: Session) -> None:
    assert SqlLookupGateway(db_session).resolve("user", set()) == {}


def test_lookup_rejects_unknown_entity_kind_and_key(db_session: Session) -> None:
    gateway = SqlLookupGateway(db_session)

    with pytest.raises(ContractViolationError):
        gateway.resolve("invoice", {uuid.uuid4()})
    with pytest.raises(ContractViolationError):
        gateway.resolve("user", {uuid.uuid4()}, key="nickname")


def test_sink_insert_flushes_into_the_callers_transaction(db_session: Session) -> None:
    opportunity_id = uuid.uuid4()
    tasks = [
        CRMActivity(
            id=uuid.uuid4(),
            entity_type="opportunity",
            entity_id=opportunity_id,
            activity_type="Task",
            subject="Call Primary Contact",
            due_date=date(2026, 10, 21),
        )
        for _ in range(3)
    ]

    results = SqlMutationSink(db_session).insert("activity", tasks)

    assert [result.record_id for result in results] == [task.id for task in tasks]
    assert all(result.success for result in results)
    assert len(db_session.scalars(select(CRMActivity)).all()) == 3

    db_session.rollback()
    assert db_session.scalars(select(CRMActivity)).all() == []


def test_sink_insert_wraps_database_errors(db_session: Session) -> None:
    broken = CRMActivity(id=uuid.uuid4(), entity_type="opportunity", entity_id=uuid.uuid4(), activity_type=None)

    with pytest.raises(MutationSinkError) as exc_info:
        SqlMutationSink(db_session).insert("activity", [broken])

    assert exc_info.value.entity_kind == "activity"
    assert exc_info.value.operation == "insert"


def test_sink_update_applies_partial_records(db_session: Session, account: CRMAccount) -> None:
    contact = CRMContact(account_id=account.id, first_name="Vera", last_name="Price", title="VP Sales")
    first = CRMOpportunity(name="First", stage_name="Prospecting", account_id=account.id, description="keep me")
    second = CRMOpportunity(name="Second", stage_name="Prospecting", account_id=account.id)
    db_session.add_all([contact, first, second])
    db_session.commit()

    results = SqlMutationSink(db_session).update(
        "opportunity",
        [
            {"id": first.id, "primary_contact_id": contact.id},
            {"id": second.id, "primary_contact_id": contact.id},
        ],
    )
    db_session.commit()

    assert [result.record_id for result in results] == [first.id, second.id]
    rows = db_session.scalars(select(CRMOpportunity).order_by(CRMOpportunity.name)).all()
    assert [row.primary_contact_id for row in rows] == [contact.id, contact.id]
    assert rows[0].description == "keep me"


def test_sink_update_requires_ids(db_session: Session) -> None:
    with pytest.raises(ContractViolationError):
        SqlMutationSink(db_session).update("opportunity", [{"primary_contact_id": uuid.uuid4()}])


def test_sink_with_empty_batches_is_a_no_op(db_session: Session) -> None:
    sink = SqlMutationSink(db_session)

    assert sink.insert("activity", []) == []
    assert sink.update("opportunity", []) == []


def test_stub_gateway_records_messages() -> None:
    StubNotificationGateway().send([_message("a@example.com"), _message("b@example.com")])

    assert [message.to_addresses for message in notifications.sent_messages] == [["a@example.com"], ["b@example.com"]]


def test_gateway_factory_selects_backend() -> None:
    assert isinstance(get_notification_gateway(Settings(notification_backend="stub")), StubNotificationGateway)
    assert isinstance(
        get_notification_gateway(Settings(notification_backend="smtp", smtp_host="mail.example.com")),
        SmtpNotificationGateway,
    )
    with pytest.raises(ValueError):
        get_notification_gateway(Settings(notification_backend="pigeon"))


class _FakeSmtp:
    instances: list[_FakeSmtp] = []

    def __init__(self, host: str, port: int, timeout: float) -> None:
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in_as: str | None = None
        self.sent: list[tuple[str, list[str]]] = []
        _FakeSmtp.instances.append(self)

    def __enter__(self) -> _FakeSmtp:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def starttls(self) -> None:
        self.started_tls = True

    def login(self, username: str, password: str) -> None:
        self.logged_in_as = username

    def send_message(self, message, to_addrs: list[str]) -> None:  # type: ignore[no-untyped-def]
        self.sent.append((str(message["Subject"]), list(to_addrs)))


def test_smtp_gateway_sends_batch_over_one_connection(monkeypatch: pytest.MonkeyPatch) -> None:
    _FakeSmtp.instances.clear()
    monkeypatch.setattr(smtplib, "SMTP", _FakeSmtp)
    gateway = SmtpNotificationGateway(
        Settings(notification_backend="smtp", smtp_host="mail.example.com", smtp_username="mailer", smtp_password="secret")
    )

    gateway.send([_message("a@example.com"), _message("b@example.com")])

    assert len(_FakeSmtp.instances) == 1
    connection = _FakeSmtp.instances[0]
    assert connection.host == "mail.example.com"
    assert connection.started_tls is True
    assert connection.logged_in_as == "mailer"
    assert [recipients for _, recipients in connection.sent] == [["a@example.com"], ["b@example.com"]]


def test_smtp_gateway_raises_delivery_error_on_transport_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(*args: object, **kwargs: object) -> None:
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(smtplib, "SMTP", refuse)
    gateway = SmtpNotificationGateway(Settings(notification_backend="smtp", smtp_host="mail.example.com"))

    with pytest.raises(NotificationDeliveryError, match="connection refused"):
        gateway.send([_message()])


def test_smtp_gateway_requires_host() -> None:
    gateway = SmtpNotificationGateway(Settings(notification_backend="smtp", smtp_host=""))

    with pytest.raises(NotificationDeliveryError, match="Missing SMTP host"):
        gateway.send([_message()])


class _FlakySmtp(_FakeSmtp):
    def send_message(self, message, to_addrs: list[str]) -> None:  # type: ignore[no-untyped-def]
        if self.sent:
            raise smtplib.SMTPRecipientsRefused({to_addrs[0]: (550, b"mailbox unavailable")})
        super().send_message(message, to_addrs)


def test_smtp_gateway_reports_partly_delivered_batch(monkeypatch: pytest.MonkeyPatch) -> None:
    _FakeSmtp.instances.clear()
    monkeypatch.setattr(smtplib, "SMTP", _FlakySmtp)
    gateway = SmtpNotificationGateway(Settings(notification_backend="smtp", smtp_host="mail.example.com"))

    with pytest.raises(NotificationDeliveryError) as exc_info:
        gateway.send([_message("a@example.com"), _message("b@example.com"), _message("c@example.com")])

    assert exc_info.value.sent_count == 1
    assert [recipients for _, recipients in _FakeSmtp.instances[0].sent] == [["a@example.com"]]


def test_smtp_gateway_rejects_header_injection_before_connecting(monkeypatch: pytest.MonkeyPatch) -> None:
    _FakeSmtp.instances.clear()
    monkeypatch.setattr(smtplib, "SMTP", _FakeSmtp)
    gateway = SmtpNotificationGateway(Settings(notification_backend="smtp", smtp_host="mail.example.com"))
    broken = EmailMessage(to_addresses=["a@example.com"], subject="Opportunity Deleted : Big\nDeal", body="gone")

    with pytest.raises(NotificationDeliveryError, match="Invalid notification message") as exc_info:
        gateway.send([_message(), broken])

    assert exc_info.value.sent_count == 0
    assert _FakeSmtp.instances == []


def test_after_delete_with_newline_in_name_keeps_deletion_under_smtp(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _FakeSmtp.instances.clear()
    monkeypatch.setattr(smtplib, "SMTP", _FakeSmtp)
    owner = CRMUser(full_name="Multi Line", email="multi@example.com")
    db_session.add(owner)
    db_session.commit()
    opportunity = CRMOpportunity(name="Big\nDeal", stage_name="Prospecting", owner_user_id=owner.id)
    db_session.add(opportunity)
    db_session.commit()
    handler = OpportunityTriggerHandler(
        lookup=SqlLookupGateway(db_session),
        sink=SqlMutationSink(db_session),
        notifier=SmtpNotificationGateway(Settings(notification_backend="smtp", smtp_host="mail.example.com")),
    )

    opportunity.deleted_at = utcnow()
    db_session.flush()
    outcome = handler.run(TriggerContext(TriggerPhase.AFTER, TriggerOperation.DELETE, [opportunity]))
    db_session.commit()

    assert outcome.delivery is not None
    assert outcome.delivery.delivered is False
    assert outcome.delivery.sent_count == 0
    assert db_session.scalar(select(CRMOpportunity.deleted_at).where(CRMOpportunity.id == opportunity.id)) is not None
