"""Tests for the outbound send pipeline and inbound transport events."""
import asyncio
import random

import pytest

from fakes import FakeTransport, ManualClock, RecordingEngine
from wahub.errors import TransportError, ValidationError
from wahub.models.ban_alert import AlertType
from wahub.models.organisation import Organisation
from wahub.repositories.organisations import OrganisationRepository
from wahub.services.admission_gate import AdmissionGate, AdmissionReason, RateLimits
from wahub.services.message_service import (
    MessageDispatcher,
    ban_alert_sink,
    client_key,
    split_client_key,
)
from wahub.services.transport import (
    AckStatus,
    ConnectionState,
    ConnectionStateChanged,
    InboundMessage,
    MessageAck,
    TransportEventStream,
)

ORG = "org-1"


class Sleeper:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def clock():
    return ManualClock(1000.0)


@pytest.fixture
def gate(clock):
    return AdmissionGate(
        default_limits=RateLimits(per_minute=2, per_hour=100, per_day=1000),
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def recorder():
    return RecordingEngine()


@pytest.fixture
def sleeper():
    return Sleeper()


@pytest.fixture
def dispatcher(gate, recorder, transport, sleeper, ban_alert_repository):
    return MessageDispatcher(gate, recorder, transport, alerts=ban_alert_repository, sleep=sleeper)


class TestClientKey:
    def test_round_trip(self):
        assert client_key("org-1", "client-7") == "org-1:client-7"
        assert split_client_key("org-1:client-7") == ("org-1", "client-7")

    def test_client_id_may_contain_separator(self):
        assert split_client_key(client_key("org-1", "a:b")) == ("org-1", "a:b")

    def test_bare_client_id(self):
        assert split_client_key("client-7") == (None, "client-7")

    @pytest.mark.parametrize("org, client", [("", "c"), ("o", ""), ("a:b", "c")])
    def test_invalid(self, org, client):
        with pytest.raises(ValidationError):
            client_key(org, client)


class TestSend:
    async def test_admitted_message_waits_then_sends(self, dispatcher, transport, recorder, sleeper):
        result = await dispatcher.send_message(ORG, "c1", "+5511999990000", "hello")

        assert result.sent
        assert result.message_id == "wamid-1"
        assert transport.sent == [("c1", "+5511999990000", "hello")]
        assert sleeper.calls == [result.admission.delay_ms / 1000]
        assert 2.0 <= sleeper.calls[0] <= 15.0
        assert recorder.events() == ["message.sent"]
        org, _, payload = recorder.triggered[0]
        assert org == ORG
        assert payload["message_id"] == "wamid-1"
        assert payload["recipient"] == "+5511999990000"

    async def test_blocked_message_is_not_sent(self, dispatcher, transport, recorder, sleeper):
        await dispatcher.send_message(ORG, "c1", "+1", "one")
        await dispatcher.send_message(ORG, "c1", "+1", "two")

        result = await dispatcher.send_message(ORG, "c1", "+1", "three")

        assert result.status == "blocked"
        assert result.admission.reason is AdmissionReason.RATE_LIMIT_MINUTE
        assert result.admission.retry_after_seconds == 60
        assert len(transport.sent) == 2
        assert len(sleeper.calls) == 2
        assert recorder.events() == ["message.sent", "message.sent"]

    async def test_gate_keys_are_per_organisation(self, dispatcher, transport):
        for _ in range(2):
            await dispatcher.send_message("org-a", "shared", "+1", "hi")

        result = await dispatcher.send_message("org-b", "shared", "+1", "hi")

        assert result.sent

    async def test_transport_failure(self, dispatcher, gate, transport, recorder):
        transport.fail_with = TransportError("Transport unreachable: refused")

        result = await dispatcher.send_message(ORG, "c1", "+1", "hi")

        assert result.status == "failed"
        assert result.error == "Transport unreachable: refused"
        assert recorder.events() == ["message.failed"]
        assert gate.snapshot("org-1:c1")["suspicion_score"] == 1

    async def test_webhook_problems_never_fail_the_send(self, gate, transport, sleeper):
        dispatcher = MessageDispatcher(gate, RecordingEngine(fail=True), transport, sleep=sleeper)

        result = await dispatcher.send_message(ORG, "c1", "+1", "hi")

        assert result.sent

    async def test_recipient_required(self, dispatcher):
        with pytest.raises(ValidationError):
            await dispatcher.send_message(ORG, "c1", "", "hi")


class TestInboundEvents:
    async def test_inbound_message(self, dispatcher, recorder):
        await dispatcher.handle_event(
            InboundMessage(ORG, "c1", sender="+5511", body="oi", message_id="in-1")
        )

        org, event, payload = recorder.triggered[0]
        assert (org, event) == (ORG, "message.received")
        assert payload["from"] == "+5511"
        assert payload["body"] == "oi"

    @pytest.mark.parametrize(
        "status, event",
        [(AckStatus.DELIVERED, "message.delivered"), (AckStatus.READ, "message.read")],
    )
    async def test_acks(self, dispatcher, recorder, status, event):
        await dispatcher.handle_event(MessageAck(ORG, "c1", "wamid-9", status))

        assert recorder.events() == [event]
        assert recorder.triggered[0][2]["message_id"] == "wamid-9"

    async def test_connected_resets_suspicion(self, dispatcher, gate, recorder):
        await gate.record_outcome("org-1:c1", "failure")
        assert gate.snapshot("org-1:c1")["suspicion_score"] == 1

        await dispatcher.handle_event(ConnectionStateChanged(ORG, "c1", ConnectionState.CONNECTED))

        assert gate.snapshot("org-1:c1")["suspicion_score"] == 0
        assert recorder.events() == ["client.connected"]

    async def test_disconnected(self, dispatcher, recorder):
        await dispatcher.handle_event(
            ConnectionStateChanged(ORG, "c1", ConnectionState.DISCONNECTED, reason="logout")
        )

        assert recorder.triggered == [(ORG, "client.disconnected", {"client_id": "c1", "reason": "logout"})]

    async def test_auth_failure_raises_an_alert(self, dispatcher, recorder, ban_alert_repository):
        await dispatcher.handle_event(
            ConnectionStateChanged(ORG, "c1", ConnectionState.AUTH_FAILURE, reason="session expired")
        )

        alerts = await ban_alert_repository.list_open(organisation_id=ORG)
        assert [alert.alert_type for alert in alerts] == [AlertType.AUTH_FAILURE]
        assert alerts[0].details == {"reason": "session expired"}
        assert recorder.triggered == []

    async def test_unknown_event(self, dispatcher):
        with pytest.raises(TypeError):
            await dispatcher.handle_event(object())

    async def test_consume_survives_bad_events(self, dispatcher, recorder):
        stream = TransportEventStream()
        await stream.publish(object())
        stream.publish_nowait(MessageAck(ORG, "c1", "wamid-1", AckStatus.READ))
        stream.close()

        await asyncio.wait_for(dispatcher.consume(stream), timeout=1)

        assert recorder.events() == ["message.read"]

    async def test_closed_stream_rejects_publish(self):
        stream = TransportEventStream()
        stream.close()

        with pytest.raises(RuntimeError):
            await stream.publish(MessageAck(ORG, "c1", "x", AckStatus.READ))


async def test_gate_alerts_are_persisted_per_tenant(ban_alert_repository, clock):
    gate = AdmissionGate(
        default_limits=RateLimits(per_minute=100, per_hour=100, per_day=100),
        clock=clock,
        alert_sink=ban_alert_sink(ban_alert_repository),
    )

    await gate.record_outcome("org-1:c1", "failure")

    alerts = await ban_alert_repository.list_open(organisation_id="org-1", client_id="c1")
    assert len(alerts) == 1
    assert alerts[0].alert_type is AlertType.SUSPICIOUS_ACTIVITY
    assert alerts[0].details["heuristic"] == "failure_ratio"


async def test_connection_applies_organisation_ceilings(session_factory, clock, recorder, transport):
    async with session_factory() as session:
        org = Organisation(name="Acme Corp", domain="acme.com", rate_limit_per_minute=1)
        session.add(org)
        await session.commit()
        org_id = org.id

    gate = AdmissionGate(
        default_limits=RateLimits(per_minute=20, per_hour=100, per_day=1000),
        clock=clock,
        rng=random.Random(7),
    )
    dispatcher = MessageDispatcher(
        gate,
        recorder,
        transport,
        organisations=OrganisationRepository(session_factory),
        sleep=Sleeper(),
    )

    await dispatcher.handle_event(ConnectionStateChanged(org_id, "c1", ConnectionState.CONNECTED))

    windows = gate.snapshot(client_key(org_id, "c1"))["windows"]
    assert windows["minute"]["max"] == 1
    assert windows["hour"]["max"] == 100
    assert (await dispatcher.send_message(org_id, "c1", "+1", "hi")).sent
    blocked = await dispatcher.send_message(org_id, "c1", "+1", "hi")
    assert blocked.admission.reason is AdmissionReason.RATE_LIMIT_MINUTE


async def test_first_send_applies_organisation_ceilings(session_factory, clock, recorder, transport):
    async with session_factory() as session:
        org = Organisation(name="Acme Corp", domain="acme.com", rate_limit_per_minute=1)
        session.add(org)
        await session.commit()
        org_id = org.id

    gate = AdmissionGate(
        default_limits=RateLimits(per_minute=20, per_hour=100, per_day=1000),
        clock=clock,
        rng=random.Random(7),
    )
    dispatcher = MessageDispatcher(
        gate,
        recorder,
        transport,
        organisations=OrganisationRepository(session_factory),
        sleep=Sleeper(),
    )

    first = await dispatcher.send_message(org_id, "c1", "+1", "hi")
    second = await dispatcher.send_message(org_id, "c1", "+1", "hi")

    assert first.status == "sent"
    assert second.status == "blocked"
    assert second.admission.reason is AdmissionReason.RATE_LIMIT_MINUTE
    assert gate.snapshot(client_key(org_id, "c1"))["windows"]["minute"]["max"] == 1


async def test_unknown_organisation_falls_back_to_defaults(session_factory, gate, recorder, transport):
    dispatcher = MessageDispatcher(
        gate,
        recorder,
        transport,
        organisations=OrganisationRepository(session_factory),
        sleep=Sleeper(),
    )

    result = await dispatcher.send_message("org-missing", "c1", "+1", "hi")

    assert result.sent
    assert gate.snapshot("org-missing:c1")["windows"]["minute"]["max"] == 2
