"""
Tests for webhook signing and delivery.
"""

import asyncio
import hashlib
import hmac
import json
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from linkpulse.models import Webhook
from linkpulse.webhooks import (
    FRAUD_DETECTED,
    LINK_CLICKED,
    WebhookDispatcher,
    WebhookTarget,
    sign_payload,
)


class RecordingTransport:
    """httpx mock transport answering with a scripted list of status codes."""

    def __init__(self, statuses=None):
        self.statuses = list(statuses or [200])
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def delays():
    return []


@pytest.fixture
def make_dispatcher(session_factory, delays):
    async def fake_sleep(seconds):
        delays.append(seconds)

    def _make(transport):
        return WebhookDispatcher(
            session_factory=session_factory,
            client_factory=transport.client,
            sleep=fake_sleep,
        )

    return _make


@pytest.fixture
def add_webhook(test_db):
    def _add(owner_id="owner-1", url="https://hooks.example/a", events=(LINK_CLICKED,), active=True, **extra):
        webhook = Webhook(
            owner_id=owner_id,
            url=url,
            secret="s3cret",
            events=list(events),
            active=active,
            **extra,
        )
        test_db.add(webhook)
        test_db.commit()
        test_db.refresh(webhook)
        return webhook

    return _add


def target(webhook_id=1, max_retries=3, delay=1.0):
    return WebhookTarget(
        id=webhook_id,
        url="https://hooks.example/a",
        secret="s3cret",
        max_retries=max_retries,
        retry_delay_seconds=delay,
    )


class TestSignPayload:
    """Tests for sign_payload."""

    def test_matches_hmac_sha256(self):
        body = '{"event": "link.clicked"}'
        expected = hmac.new(b"s3cret", body.encode(), hashlib.sha256).hexdigest()
        assert sign_payload(body, "s3cret") == expected

    def test_secret_matters(self):
        assert sign_payload("{}", "a") != sign_payload("{}", "b")


class TestDeliver:
    """Tests for WebhookDispatcher.deliver."""

    def test_successful_delivery(self, test_db, make_dispatcher, add_webhook):
        webhook = add_webhook()
        transport = RecordingTransport([200])
        dispatcher = make_dispatcher(transport)
        payload = {"event": LINK_CLICKED, "data": {"short_code": "promo"}}

        ok = asyncio.run(dispatcher.deliver(target(webhook.id), payload))

        assert ok is True
        [request] = transport.requests
        body = request.content.decode()
        assert json.loads(body) == payload
        assert request.headers["X-Webhook-Signature"] == sign_payload(body, "s3cret")
        assert request.headers["X-Webhook-Event"] == LINK_CLICKED

        test_db.refresh(webhook)
        assert webhook.total_deliveries == 1
        assert webhook.failed_deliveries == 0
        assert webhook.last_delivery_at is not None

    def test_retries_with_linear_backoff(self, test_db, make_dispatcher, add_webhook, delays):
        webhook = add_webhook()
        transport = RecordingTransport([500])
        dispatcher = make_dispatcher(transport)

        ok = asyncio.run(dispatcher.deliver(target(webhook.id, max_retries=3, delay=1.0), {"event": LINK_CLICKED}))

        assert ok is False
        assert len(transport.requests) == 3
        assert delays == [1.0, 2.0]

        test_db.refresh(webhook)
        assert webhook.total_deliveries == 1
        assert webhook.failed_deliveries == 1

    def test_recovers_after_failure(self, make_dispatcher, add_webhook, delays):
        webhook = add_webhook()
        transport = RecordingTransport([503, 200])
        dispatcher = make_dispatcher(transport)

        ok = asyncio.run(dispatcher.deliver(target(webhook.id), {"event": LINK_CLICKED}))

        assert ok is True
        assert len(transport.requests) == 2
        assert delays == [1.0]

    def test_connection_error_is_retried(self, make_dispatcher, add_webhook, delays):
        webhook = add_webhook()

        class FailingTransport(RecordingTransport):
            def __call__(self, request):
                self.requests.append(request)
                raise httpx.ConnectError("refused", request=request)

        transport = FailingTransport()
        ok = asyncio.run(make_dispatcher(transport).deliver(target(webhook.id, max_retries=2), {"event": LINK_CLICKED}))

        assert ok is False
        assert len(transport.requests) == 2


class TestTrigger:
    """Tests for event fan-out."""

    def test_only_matching_webhooks_receive_event(self, make_dispatcher, add_webhook):
        add_webhook(url="https://hooks.example/clicks", events=[LINK_CLICKED])
        add_webhook(url="https://hooks.example/fraud", events=[FRAUD_DETECTED])
        add_webhook(url="https://hooks.example/off", events=[LINK_CLICKED], active=False)
        add_webhook(owner_id="someone-else", url="https://hooks.example/other", events=[LINK_CLICKED])
        transport = RecordingTransport([200])
        dispatcher = make_dispatcher(transport)

        async def scenario():
            dispatcher.trigger("owner-1", LINK_CLICKED, {"short_code": "promo"})
            await dispatcher.drain()

        asyncio.run(scenario())

        assert [str(r.url) for r in transport.requests] == ["https://hooks.example/clicks"]
        body = json.loads(transport.requests[0].content)
        assert body["event"] == LINK_CLICKED
        assert body["data"] == {"short_code": "promo"}
        assert "timestamp" in body

    def test_trigger_returns_before_delivery(self, make_dispatcher, add_webhook):
        add_webhook()
        transport = RecordingTransport([200])
        dispatcher = make_dispatcher(transport)

        async def scenario():
            dispatcher.trigger("owner-1", LINK_CLICKED, {})
            sent_before_drain = len(transport.requests)
            await dispatcher.drain()
            return sent_before_drain

        assert asyncio.run(scenario()) == 0
        assert len(transport.requests) == 1

    def test_no_owner_is_ignored(self, make_dispatcher):
        transport = RecordingTransport()
        dispatcher = make_dispatcher(transport)

        async def scenario():
            dispatcher.trigger(None, LINK_CLICKED, {})
            await dispatcher.drain()

        asyncio.run(scenario())
        assert transport.requests == []

    def test_without_event_loop_is_dropped(self, make_dispatcher, add_webhook):
        add_webhook()
        transport = RecordingTransport()
        make_dispatcher(transport).trigger("owner-1", LINK_CLICKED, {})
        assert transport.requests == []

    def test_zero_retries_means_single_attempt(self, make_dispatcher, add_webhook, delays):
        add_webhook(max_retries=0)
        transport = RecordingTransport([500])
        dispatcher = make_dispatcher(transport)

        async def scenario():
            dispatcher.trigger("owner-1", LINK_CLICKED, {})
            await dispatcher.drain()

        asyncio.run(scenario())

        [webhook_target] = dispatcher._active_webhooks("owner-1", LINK_CLICKED)
        assert webhook_target.max_retries == 0
        assert len(transport.requests) == 1
        assert delays == []

    def test_lookup_failure_is_contained(self, delays):
        def broken_session_factory():
            raise RuntimeError("pool exhausted")

        async def fake_sleep(seconds):
            delays.append(seconds)

        transport = RecordingTransport()
        dispatcher = WebhookDispatcher(
            session_factory=broken_session_factory,
            client_factory=transport.client,
            sleep=fake_sleep,
        )

        asyncio.run(dispatcher._dispatch("owner-1", LINK_CLICKED, {}))

        assert transport.requests == []
