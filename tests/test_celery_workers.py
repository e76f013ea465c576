"""
Tests for the push notification worker
"""
import json
import pytest
from contextlib import asynccontextmanager
from unittest.mock import patch

import httpx

from courier_hub.core.exceptions import TransportFailure
from courier_hub.core.logging import get_correlation_id
from courier_hub.workers import tasks
from courier_hub.workers.tasks import deliver_push_notification, parse_subscription

SUBSCRIPTION = json.dumps({"endpoint": "https://push.example/abc", "keys": {"p256dh": "k", "auth": "a"}})

_RealAsyncClient = httpx.AsyncClient


@pytest.fixture
def task_session(db_session):
    """Point the worker's session factory at the test session"""
    @asynccontextmanager
    async def _session():
        yield db_session

    with patch.object(tasks, "get_task_session", _session):
        yield db_session


@pytest.fixture
def gateway():
    """Fake push gateway; set ``gateway.status`` per endpoint to fail"""
    class Gateway:
        def __init__(self):
            self.requests = []
            self.status = {}

        def handler(self, request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            self.requests.append((request, body))
            endpoint = body["subscription"]["endpoint"]
            return httpx.Response(self.status.get(endpoint, 201), json={"ok": True})

    fake = Gateway()

    def _client(*args, **kwargs):
        return _RealAsyncClient(transport=httpx.MockTransport(fake.handler), **kwargs)

    with patch.object(tasks.httpx, "AsyncClient", _client):
        yield fake


class TestParseSubscription:

    @pytest.mark.unit
    def test_valid_subscription(self):
        assert parse_subscription(SUBSCRIPTION)["endpoint"] == "https://push.example/abc"

    @pytest.mark.unit
    @pytest.mark.parametrize("token", [None, "", "not-json", "[]", json.dumps({"keys": {}})])
    def test_unusable_tokens(self, token):
        assert parse_subscription(token) is None


class TestDeliverPushNotification:

    @pytest.mark.unit
    async def test_sends_to_subscribed_recipients(self, task_session, gateway, actor_factory):
        courier = await actor_factory(name="Subscribed", push_token=SUBSCRIPTION)
        silent = await actor_factory(name="No Token")

        result = await deliver_push_notification(
            [courier.id, silent.id, 999], "Nova entrega atribuída", "Drogasil - R$ 16,00", "http://app/driver"
        )

        assert result == {"sent": 1, "failed": 0, "skipped": 2}
        [(request, body)] = gateway.requests
        assert body["notification"] == {
            "title": "Nova entrega atribuída",
            "body": "Drogasil - R$ 16,00",
            "url": "http://app/driver",
        }

    @pytest.mark.unit
    async def test_gateway_error_counts_as_failed(self, task_session, gateway, actor_factory):
        courier = await actor_factory(name="Subscribed", push_token=SUBSCRIPTION)
        gateway.status["https://push.example/abc"] = 410

        result = await deliver_push_notification([courier.id], "t", "b")

        assert result == {"sent": 0, "failed": 1, "skipped": 0}

    @pytest.mark.unit
    async def test_gateway_token_sent_as_bearer(self, task_session, gateway, actor_factory):
        courier = await actor_factory(name="Subscribed", push_token=SUBSCRIPTION)

        with patch.object(tasks.settings, "PUSH_GATEWAY_TOKEN", "secret"):
            await deliver_push_notification([courier.id], "t", "b")

        [(request, _)] = gateway.requests
        assert request.headers["Authorization"] == "Bearer secret"


class TestSendPushNotificationTask:

    @pytest.mark.unit
    def test_task_runs_delivery_in_own_loop(self):
        async def fake_deliver(recipient_ids, title, body, deep_link=None):
            return {"sent": len(recipient_ids), "failed": 0, "skipped": 0}

        with patch.object(tasks, "deliver_push_notification", fake_deliver):
            result = tasks.send_push_notification([1, 2], "t", "b", None)

        assert result == {"sent": 2, "failed": 0, "skipped": 0}

    @pytest.mark.unit
    def test_task_logs_under_enqueuing_correlation_id(self):
        seen = []

        async def fake_deliver(recipient_ids, title, body, deep_link=None):
            seen.append(get_correlation_id())
            return {"sent": 0, "failed": 0, "skipped": 0}

        with patch.object(tasks, "deliver_push_notification", fake_deliver):
            tasks.send_push_notification([1], "t", "b", None, correlation_id="req-9c1d")

        assert seen == ["req-9c1d"]


class TestTransportFailure:

    @pytest.mark.unit
    def test_from_response_truncates_body(self):
        response = httpx.Response(500, text="x" * 1000)

        failure = TransportFailure.from_response("push_gateway", response)

        assert failure.details["status_code"] == 500
        assert len(failure.details["response_text"]) == 500
        assert failure.details["service"] == "push_gateway"
