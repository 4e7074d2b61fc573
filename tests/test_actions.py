"""Tests for the action provider, the built-in actions and the retry helpers."""

import asyncio
import time

import pytest
import requests

from workflow_engine.actions import builtin
from workflow_engine.actions import register_builtin_actions
from workflow_engine.core.action_provider import ActionContext, ActionProvider
from workflow_engine.core.error_recovery import HealthChecker, RetryConfig, with_retry
from workflow_engine.core.exceptions import (
    ActionProviderError, ExecutionCancelledError, NodeExecutionError, StorageError, TransientError
)
from workflow_engine.models.core import RetryPolicy


@pytest.fixture
def context():
    return ActionContext(execution_id="exec-1", workflow_id="wf", node_id="node")


class FakeResponse:

    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self.headers = {"Content-Type": "application/json"}
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class TestActionProvider:

    def test_register_and_call(self, context):
        provider = ActionProvider()

        def double(variables, context, value=0):
            """Double a value."""
            return value * 2

        provider.register_action("double", double)

        assert provider.action_exists("double")
        assert provider.list_actions() == {"double": "Double a value."}
        assert provider.call_action("double", {}, context, value=21) == 42

    def test_duplicate_registration(self):
        provider = ActionProvider()
        provider.register_action("a", lambda variables, context: 1)

        with pytest.raises(ActionProviderError):
            provider.register_action("a", lambda variables, context: 2)

        provider.register_action("a", lambda variables, context: 2, replace=True)
        assert provider.get_action("a")({}, None) == 2

    def test_invalid_registration(self):
        provider = ActionProvider()

        with pytest.raises(ActionProviderError):
            provider.register_action("  ", lambda variables, context: None)
        with pytest.raises(ActionProviderError):
            provider.register_action("not-callable", "nope")

    def test_unknown_action(self, context):
        provider = ActionProvider()

        with pytest.raises(ActionProviderError, match="is not registered"):
            provider.call_action("missing", {}, context)
        assert provider.unregister_action("missing") is False

    def test_unexpected_errors_are_wrapped_as_recoverable(self, context):
        provider = ActionProvider()

        def broken(variables, context):
            raise KeyError("gone")

        provider.register_action("broken", broken)

        with pytest.raises(ActionProviderError) as exc_info:
            provider.call_action("broken", {}, context)

        assert exc_info.value.recoverable
        assert "KeyError" in exc_info.value.message

    def test_engine_errors_propagate_unchanged(self, context):
        provider = ActionProvider()

        def permanent(variables, context):
            raise NodeExecutionError("bad input", transient=False)

        provider.register_action("permanent", permanent)

        with pytest.raises(NodeExecutionError) as exc_info:
            provider.call_action("permanent", {}, context)
        assert exc_info.value.transient is False


class TestBuiltinActions:

    def test_all_registered(self):
        provider = ActionProvider()
        register_builtin_actions(provider)

        assert set(provider.list_actions()) == set(builtin.BUILTIN_ACTIONS)

    def test_set_and_copy_variables(self, context):
        assert builtin.set_variables({}, context, values={"a": 1}) == {"a": 1}
        assert builtin.copy_variable({"src": [1, 2]}, context, source="src") == [1, 2]
        assert builtin.copy_variable({}, context, source="src", default="fallback") == "fallback"

    def test_increment(self, context):
        assert builtin.increment({"counter": 2}, context) == 3
        assert builtin.increment({}, context, variable="total", step=5) == 5

        with pytest.raises(NodeExecutionError) as exc_info:
            builtin.increment({"counter": "two"}, context)
        assert exc_info.value.transient is False

    def test_fail(self, context):
        with pytest.raises(TransientError):
            builtin.fail({}, context)
        with pytest.raises(NodeExecutionError):
            builtin.fail({}, context, transient=False)

    def test_sleep_observes_cancellation(self):
        class CancelledToken:
            def raise_if_cancelled(self):
                raise ExecutionCancelledError("Execution was cancelled")

        cancelled = ActionContext(execution_id="e", workflow_id="w", node_id="n",
                                  cancellation_token=CancelledToken())

        with pytest.raises(ExecutionCancelledError):
            builtin.sleep({}, cancelled, seconds=5)

    def test_http_request(self, context, monkeypatch):
        calls = []

        def fake_request(method, url, **kwargs):
            calls.append((method, url, kwargs))
            return FakeResponse(payload={"ok": True})

        monkeypatch.setattr(builtin.requests, "request", fake_request)

        result = builtin.http_request({}, context, url="http://svc/orders", method="post", body={"id": 1})

        assert result["status_code"] == 200
        assert result["body"] == {"ok": True}
        method, url, kwargs = calls[0]
        assert (method, url, kwargs["json"]) == ("POST", "http://svc/orders", {"id": 1})

    def test_http_text_body(self, context, monkeypatch):
        monkeypatch.setattr(builtin.requests, "request", lambda *a, **k: FakeResponse(text="pong"))

        assert builtin.http_request({}, context, url="http://svc/ping")["body"] == "pong"

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    def test_http_retryable_statuses(self, context, monkeypatch, status_code):
        monkeypatch.setattr(builtin.requests, "request", lambda *a, **k: FakeResponse(status_code))

        with pytest.raises(TransientError):
            builtin.http_request({}, context, url="http://svc")

    def test_http_client_error_is_permanent(self, context, monkeypatch):
        monkeypatch.setattr(builtin.requests, "request", lambda *a, **k: FakeResponse(404))

        with pytest.raises(NodeExecutionError) as exc_info:
            builtin.http_request({}, context, url="http://svc")
        assert exc_info.value.transient is False

    def test_http_connection_error_is_transient(self, context, monkeypatch):
        def refuse(*args, **kwargs):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(builtin.requests, "request", refuse)

        with pytest.raises(TransientError):
            builtin.http_request({}, context, url="http://svc")

    def test_http_requires_url(self, context):
        with pytest.raises(NodeExecutionError):
            builtin.http_request({}, context)


class TestRetryHelpers:

    def test_node_backoff(self):
        config = RetryConfig.from_policy(RetryPolicy(max_attempts=5, base_delay=0.5, max_delay=1.5))

        assert [config.get_delay(attempt) for attempt in (1, 2, 3, 4)] == [0.5, 1.0, 1.5, 1.5]

    def test_with_retry_recovers(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=3, base_delay=0.0, jitter=False))
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StorageError("database is locked")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_with_retry_gives_up(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=2, base_delay=0.0, jitter=False))
        def always_down():
            calls.append(1)
            raise TransientError("down")

        with pytest.raises(TransientError):
            always_down()
        assert len(calls) == 2

    def test_with_retry_ignores_other_errors(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=3, base_delay=0.0, jitter=False))
        def broken():
            calls.append(1)
            raise KeyError("bug")

        with pytest.raises(KeyError):
            broken()
        assert len(calls) == 1


class TestHealthChecker:

    def test_results(self):
        checker = HealthChecker()
        checker.register_check("ok", lambda: {"message": "fine", "items": 3})
        checker.register_check("broken", lambda: 1 / 0)

        results = asyncio.run(checker.run_all_checks())

        assert results["overall_status"] == "unhealthy"
        assert results["checks"]["ok"]["status"] == "healthy"
        assert results["checks"]["ok"]["items"] == 3
        assert results["checks"]["broken"]["error_type"] == "ZeroDivisionError"

    def test_timeout(self):
        checker = HealthChecker()
        checker.register_check("slow", lambda: time.sleep(0.5), timeout=0.05)

        result = asyncio.run(checker.run_check("slow"))

        assert result["status"] == "timeout"

    def test_unknown_check(self):
        assert asyncio.run(HealthChecker().run_check("missing"))["status"] == "error"
