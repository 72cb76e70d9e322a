"""Unit tests for the notification dispatcher and webhook sinks."""

import json

import httpx
import pytest

from conftest import RecordingSink
from cert_agent.adapters.outbound.webhook_notifier import JSONWebhookSink, SlackWebhookSink
from cert_agent.domain.entities.events import EventKind, LifecycleEvent, Severity
from cert_agent.domain.services.notification_dispatcher import NotificationDispatcher


class BrokenSink:
    def send(self, event, text):
        raise ConnectionError("webhook down")


def event(kind=EventKind.RENEWAL_FAILED, **kwargs) -> LifecycleEvent:
    return LifecycleEvent(kind=kind, domain_set="web", message="CA unreachable", **kwargs)


@pytest.mark.unit
class TestLifecycleEvent:
    """Test event defaults."""

    def test_default_severity(self):
        assert event(EventKind.RENEWAL_SUCCEEDED).severity == Severity.INFO
        assert event(EventKind.RENEWAL_FAILED).severity == Severity.WARNING
        assert event(EventKind.RELOAD_FAILED_CRITICAL).severity == Severity.CRITICAL

    def test_explicit_severity(self):
        assert event(severity=Severity.CRITICAL).severity == Severity.CRITICAL

    def test_to_dict(self):
        data = event(details={"state": "renewing"}).to_dict()
        assert data["kind"] == "renewal_failed"
        assert data["severity"] == "warning"
        assert data["details"] == {"state": "renewing"}


@pytest.mark.unit
class TestDispatcher:
    """Test fan-out and failure isolation."""

    def test_render(self):
        text = NotificationDispatcher(service_name="api").render(event())
        assert "[api]" in text
        assert "(web)" in text
        assert "CA unreachable" in text

    def test_render_critical_title_follows_rollback_result(self):
        dispatcher = NotificationDispatcher()
        restored = dispatcher.render(event(EventKind.RELOAD_FAILED_CRITICAL, details={"restored": True}))
        not_restored = dispatcher.render(event(EventKind.RELOAD_FAILED_CRITICAL, details={"restored": False}))

        assert "rolled back" in restored
        assert "rolled back" not in not_restored
        assert "rollback incomplete" in not_restored

    def test_dispatch_to_all_sinks(self):
        a, b = RecordingSink(), RecordingSink()
        dispatcher = NotificationDispatcher([a, b])

        assert dispatcher.dispatch(event()) == 2
        assert len(a.events) == 1 and len(b.events) == 1
        assert dispatcher.recent[-1].kind == EventKind.RENEWAL_FAILED

    def test_sink_failure_absorbed(self):
        good = RecordingSink()
        dispatcher = NotificationDispatcher([BrokenSink(), good])

        assert dispatcher.dispatch(event()) == 1
        assert len(good.events) == 1

    def test_no_sinks(self):
        assert NotificationDispatcher().dispatch(event()) == 0


@pytest.mark.unit
class TestWebhookSinks:
    """Test webhook payloads."""

    def test_slack_payload(self):
        captured = []

        def handler(request):
            captured.append(json.loads(request.content))
            return httpx.Response(200, text="ok")

        sink = SlackWebhookSink("https://hooks.slack.test/x", transport=httpx.MockTransport(handler))
        sink.send(event(), "hello")

        assert captured == [{"text": "hello", "username": "cert-agent", "icon_emoji": ":lock:"}]

    def test_json_payload(self):
        captured = []

        def handler(request):
            captured.append(json.loads(request.content))
            return httpx.Response(204)

        sink = JSONWebhookSink("https://hooks.test/x", service_name="web", transport=httpx.MockTransport(handler))
        sink.send(event(), "hello")

        assert captured[0]["service"] == "web"
        assert captured[0]["kind"] == "renewal_failed"
        assert captured[0]["text"] == "hello"

    def test_http_error_raises_and_dispatcher_absorbs(self):
        sink = SlackWebhookSink(
            "https://hooks.slack.test/x",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        with pytest.raises(httpx.HTTPStatusError):
            sink.send(event(), "hello")
        assert NotificationDispatcher([sink]).dispatch(event()) == 0
