"""Tests for webhook fan-out, signed delivery and the retry state machine."""
import json

import httpx
import pytest

from wahub.errors import SubscriptionNotFound, ValidationError
from wahub.models.webhook import DeliveryOutcome, WebhookSubscription
from wahub.services.delivery_queue import DelayQueue
from wahub.services.webhook_service import (
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    WebhookEngine,
)
from wahub.services.webhook_signing import verify_signature

from fakes import Subscriber

SUBSCRIBER_URL = "https://hooks.example.com/wahub"


async def register(engine, org_id, events=("message.sent",), **kwargs):
    return await engine.register_subscription(org_id, SUBSCRIBER_URL, list(events), **kwargs)


async def logs_for(webhook_repository, org_id, subscription_id):
    return await webhook_repository.list_delivery_logs(org_id, subscription_id)


class TestDelivery:
    async def test_success_after_two_server_errors(
        self, make_engine, scheduler, webhook_repository, org_id
    ):
        subscriber = Subscriber(500, 500, 200)
        engine = make_engine(subscriber)
        registered = await register(engine, org_id)

        assert await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"}) == 1
        await scheduler.run_all()

        logs = await logs_for(webhook_repository, org_id, registered.id)
        assert len(logs) == 1
        assert logs[0].outcome is DeliveryOutcome.DELIVERED
        assert logs[0].attempt_count == 3
        assert logs[0].status_code == 200
        assert [entry["status_code"] for entry in logs[0].attempt_history] == [500, 500, 200]
        assert len(subscriber.requests) == 3
        assert scheduler.delays == [0, 2.0, 4.0]

    async def test_gives_up_after_max_attempts(
        self, make_engine, scheduler, webhook_repository, org_id
    ):
        subscriber = Subscriber(503)
        engine = make_engine(subscriber)
        registered = await register(engine, org_id)

        await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"})
        await scheduler.run_all()

        logs = await logs_for(webhook_repository, org_id, registered.id)
        assert len(logs) == 1
        assert logs[0].outcome is DeliveryOutcome.FAILED
        assert logs[0].attempt_count == 3
        assert logs[0].status_code == 503
        assert logs[0].error_message == "HTTP 503"
        assert len(subscriber.requests) == 3
        assert scheduler.pending == 0

    async def test_no_subscribers_schedules_nothing(self, engine, scheduler, org_id):
        assert await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"}) == 0

        assert scheduler.delays == []
        assert scheduler.pending == 0

    async def test_only_matching_active_subscriptions_receive(
        self, make_engine, scheduler, org_id
    ):
        subscriber = Subscriber(200)
        engine = make_engine(subscriber)
        await register(engine, org_id, events=["message.sent"])
        await register(engine, org_id, events=["client.connected"])
        paused = await register(engine, org_id, events=["message.sent"])
        await engine.update_subscription(org_id, paused.id, active=False)

        assert await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"}) == 1
        await scheduler.run_all()

        assert len(subscriber.requests) == 1

    async def test_trigger_does_not_deliver_inline(self, engine, subscriber, scheduler, org_id):
        await register(engine, org_id)

        await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"})

        assert subscriber.requests == []
        assert scheduler.pending == 1

    async def test_unknown_event_is_rejected(self, engine, org_id):
        with pytest.raises(ValidationError):
            await engine.trigger_event(org_id, "message.exploded", {})

    async def test_url_filter_narrows_fan_out(self, make_engine, scheduler, org_id):
        subscriber = Subscriber(200)
        engine = make_engine(subscriber)
        await engine.register_subscription(org_id, "https://crm.example.com/hooks", ["message.sent"])
        await engine.register_subscription(org_id, "https://billing.example.com/hooks", ["message.sent"])

        count = await engine.trigger_event(
            org_id, "message.sent", {"message_id": "m1"}, url_contains="crm.example.com"
        )
        await scheduler.run_all()

        assert count == 1
        assert [str(request.url) for request in subscriber.requests] == ["https://crm.example.com/hooks"]

    async def test_url_filter_without_match_schedules_nothing(self, engine, scheduler, org_id):
        await register(engine, org_id)

        assert await engine.trigger_event(
            org_id, "message.sent", {"message_id": "m1"}, url_contains="nowhere.example.com"
        ) == 0
        assert scheduler.pending == 0

    async def test_network_error_then_success(
        self, make_engine, scheduler, webhook_repository, org_id
    ):
        subscriber = Subscriber(httpx.ConnectError("connection refused"), 204)
        engine = make_engine(subscriber)
        registered = await register(engine, org_id)

        await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"})
        await scheduler.run_all()

        [log] = await logs_for(webhook_repository, org_id, registered.id)
        assert log.outcome is DeliveryOutcome.DELIVERED
        assert log.attempt_count == 2
        assert log.status_code == 204
        assert log.attempt_history[0]["status_code"] is None
        assert "connection refused" in log.attempt_history[0]["error"]

    async def test_timeouts_exhaust_attempts(
        self, make_engine, scheduler, webhook_repository, org_id
    ):
        subscriber = Subscriber(httpx.ReadTimeout("too slow"))
        engine = make_engine(subscriber)
        registered = await register(engine, org_id)

        await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"})
        await scheduler.run_all()

        [log] = await logs_for(webhook_repository, org_id, registered.id)
        assert log.outcome is DeliveryOutcome.FAILED
        assert log.status_code is None
        assert log.error_message == "Request timeout"
        assert log.attempt_count == 3

    async def test_only_200_and_204_count_as_delivered(
        self, make_engine, scheduler, webhook_repository, org_id
    ):
        subscriber = Subscriber(202)
        engine = make_engine(subscriber, max_attempts=1)
        registered = await register(engine, org_id)

        await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"})
        await scheduler.run_all()

        [log] = await logs_for(webhook_repository, org_id, registered.id)
        assert log.outcome is DeliveryOutcome.FAILED
        assert log.status_code == 202

    async def test_each_subscription_gets_one_terminal_log(
        self, make_engine, scheduler, webhook_repository, org_id
    ):
        subscriber = Subscriber(500, 200, 500, 500, 500, 500)
        engine = make_engine(subscriber)
        first = await register(engine, org_id)
        second = await register(engine, org_id)

        assert await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"}) == 2
        await scheduler.run_all()

        for registered in (first, second):
            logs = await logs_for(webhook_repository, org_id, registered.id)
            assert len(logs) == 1
        delivery_ids = {request.headers[DELIVERY_ID_HEADER] for request in subscriber.requests}
        assert len(delivery_ids) == 2


class TestBackoff:
    def test_backoff_doubles(self, engine):
        assert [engine.backoff_delay(attempt) for attempt in range(3)] == [2.0, 4.0, 8.0]

    def test_backoff_is_strictly_increasing(self, engine):
        delays = [engine.backoff_delay(attempt) for attempt in range(12)]

        assert all(later > earlier for earlier, later in zip(delays, delays[1:]))

    async def test_retry_waits_for_backoff(self, make_engine, scheduler, org_id):
        subscriber = Subscriber(500, 200)
        engine = make_engine(subscriber)
        await register(engine, org_id)

        await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"})
        await scheduler.run_due()
        assert len(subscriber.requests) == 1

        await scheduler.advance(1.5)
        assert len(subscriber.requests) == 1

        await scheduler.advance(0.5)
        assert len(subscriber.requests) == 2

    async def test_max_attempts_is_configurable(
        self, make_engine, scheduler, webhook_repository, org_id
    ):
        subscriber = Subscriber(500)
        engine = make_engine(subscriber, max_attempts=5)
        registered = await register(engine, org_id)

        await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"})
        await scheduler.run_all()

        [log] = await logs_for(webhook_repository, org_id, registered.id)
        assert log.attempt_count == 5
        assert scheduler.delays == [0, 2.0, 4.0, 8.0, 16.0]


class TestClientErrorPolicy:
    async def test_client_errors_retried_by_default(
        self, make_engine, scheduler, webhook_repository, org_id
    ):
        subscriber = Subscriber(404)
        engine = make_engine(subscriber)
        registered = await register(engine, org_id)

        await engine.trigger_event(org_id, "message.sent", {})
        await scheduler.run_all()

        [log] = await logs_for(webhook_repository, org_id, registered.id)
        assert log.attempt_count == 3

    async def test_client_errors_terminal_when_disabled(
        self, make_engine, scheduler, webhook_repository, org_id
    ):
        subscriber = Subscriber(410)
        engine = make_engine(subscriber, retry_client_errors=False)
        registered = await register(engine, org_id)

        await engine.trigger_event(org_id, "message.sent", {})
        await scheduler.run_all()

        [log] = await logs_for(webhook_repository, org_id, registered.id)
        assert log.outcome is DeliveryOutcome.FAILED
        assert log.attempt_count == 1

    async def test_throttling_still_retried_when_client_errors_disabled(
        self, make_engine, scheduler, webhook_repository, org_id
    ):
        subscriber = Subscriber(429, 200)
        engine = make_engine(subscriber, retry_client_errors=False)
        registered = await register(engine, org_id)

        await engine.trigger_event(org_id, "message.sent", {})
        await scheduler.run_all()

        [log] = await logs_for(webhook_repository, org_id, registered.id)
        assert log.outcome is DeliveryOutcome.DELIVERED
        assert log.attempt_count == 2


class TestSigning:
    async def test_request_is_signed_and_labelled(self, make_engine, scheduler, org_id):
        subscriber = Subscriber(200)
        engine = make_engine(subscriber)
        registered = await register(
            engine, org_id, headers={"Authorization": "Bearer abc"}
        )

        await engine.trigger_event(org_id, "message.sent", {"message_id": "m1", "to": "+5511"})
        await scheduler.run_all()

        [request] = subscriber.requests
        assert str(request.url) == SUBSCRIBER_URL
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers[EVENT_HEADER] == "message.sent"
        assert request.headers[TIMESTAMP_HEADER].isdigit()
        assert request.headers["Authorization"] == "Bearer abc"
        assert verify_signature(request.content, request.headers[SIGNATURE_HEADER], registered.secret)

        body = json.loads(request.content)
        assert body["event"] == "message.sent"
        assert body["data"] == {"message_id": "m1", "to": "+5511"}
        assert "timestamp" in body

    async def test_retries_resend_identical_body(self, make_engine, scheduler, org_id):
        subscriber = Subscriber(500, 200)
        engine = make_engine(subscriber)
        await register(engine, org_id)

        await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"})
        await scheduler.run_all()

        first, second = subscriber.requests
        assert first.content == second.content
        assert first.headers[SIGNATURE_HEADER] == second.headers[SIGNATURE_HEADER]
        assert first.headers[DELIVERY_ID_HEADER] == second.headers[DELIVERY_ID_HEADER]

    async def test_missing_secret_fails_without_retry(
        self, make_engine, scheduler, webhook_repository, org_id
    ):
        subscriber = Subscriber(200)
        engine = make_engine(subscriber)
        broken = await webhook_repository.add_subscription(
            WebhookSubscription(
                organisation_id=org_id,
                url=SUBSCRIBER_URL,
                events=["message.sent"],
                headers={},
                secret="",
            )
        )

        await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"})
        await scheduler.run_all()

        [log] = await logs_for(webhook_repository, org_id, broken.id)
        assert log.outcome is DeliveryOutcome.FAILED
        assert log.attempt_count == 1
        assert log.status_code is None
        assert "secret" in log.error_message
        assert subscriber.requests == []
        assert scheduler.delays == [0]


class TestTestWebhook:
    async def test_single_attempt_reports_result(
        self, make_engine, webhook_repository, scheduler, org_id
    ):
        subscriber = Subscriber(500)
        engine = make_engine(subscriber)
        registered = await register(engine, org_id)

        result = await engine.test_webhook(registered.id, org_id)

        assert not result.success
        assert result.status_code == 500
        assert len(subscriber.requests) == 1
        assert subscriber.requests[0].headers[EVENT_HEADER] == "test"
        assert scheduler.delays == []
        assert await logs_for(webhook_repository, org_id, registered.id) == []

    async def test_success(self, engine, org_id):
        registered = await register(engine, org_id)

        result = await engine.test_webhook(registered.id, org_id)

        assert result.success
        assert result.status_code == 200
        assert result.response_time_ms is not None

    async def test_unknown_subscription(self, engine, org_id):
        with pytest.raises(SubscriptionNotFound):
            await engine.test_webhook("does-not-exist", org_id)


class TestShutdown:
    async def test_pending_retry_gets_a_terminal_log(self, webhook_repository, org_id):
        subscriber = Subscriber(500)
        client = subscriber.client()
        queue = DelayQueue(workers=1)
        await queue.start()
        engine = WebhookEngine(
            webhook_repository,
            queue,
            http_client=client,
            max_attempts=3,
            backoff_base_seconds=2.0,
            production=False,
        )
        registered = await register(engine, org_id)

        await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"})
        await queue.stop()
        await client.aclose()

        logs = await logs_for(webhook_repository, org_id, registered.id)
        assert len(logs) == 1
        assert logs[0].outcome is DeliveryOutcome.FAILED
        assert logs[0].error_message == "shutdown"
        assert logs[0].attempt_count == 1
        assert logs[0].status_code == 500
        assert len(subscriber.requests) == 1
        assert queue.pending == 0

    async def test_undelivered_attempt_is_logged_once(self, webhook_repository, org_id):
        client = Subscriber(200).client()
        queue = DelayQueue(workers=1)
        engine = WebhookEngine(
            webhook_repository,
            queue,
            http_client=client,
            production=False,
        )
        registered = await register(engine, org_id)
        await engine.trigger_event(org_id, "message.sent", {"message_id": "m1"})

        # never started: the ready job is dropped rather than run
        await queue.stop()
        await client.aclose()

        logs = await logs_for(webhook_repository, org_id, registered.id)
        assert len(logs) == 1
        assert logs[0].outcome is DeliveryOutcome.FAILED
        assert logs[0].error_message == "shutdown"
        assert logs[0].attempt_count == 0
        assert logs[0].status_code is None
