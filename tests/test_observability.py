from types import SimpleNamespace

import sentry_sdk

from contentpilot.core import observability


def _settings(dsn: str, *, env: str = "production", rate: float = 0.2) -> SimpleNamespace:
    return SimpleNamespace(
        sentry_dsn=dsn,
        env=env,
        app_name="contentpilot",
        app_version="0.1.0",
        sentry_traces_sample_rate=rate,
    )


def test_init_sentry_skips_when_dsn_missing(monkeypatch) -> None:
    observability.reset_observability_for_tests()
    calls = []

    monkeypatch.setattr(observability.sentry_sdk, "init", lambda **kwargs: calls.append(kwargs))
    monkeypatch.setattr(observability, "get_settings", lambda: _settings("  ", env="development"))

    assert observability.init_sentry() is False
    assert calls == []
    observability.reset_observability_for_tests()


def test_init_sentry_initializes_once(monkeypatch) -> None:
    observability.reset_observability_for_tests()
    calls = []

    monkeypatch.setattr(observability.sentry_sdk, "init", lambda **kwargs: calls.append(kwargs))
    monkeypatch.setattr(observability, "get_settings", lambda: _settings("https://abc@example.ingest.sentry.io/1"))

    assert observability.init_sentry() is True
    assert observability.init_sentry() is True
    assert len(calls) == 1
    assert calls[0]["dsn"] == "https://abc@example.ingest.sentry.io/1"
    assert calls[0]["environment"] == "production"
    assert calls[0]["release"] == "contentpilot@0.1.0"
    assert calls[0]["traces_sample_rate"] == 0.2
    assert calls[0]["send_default_pii"] is False
    observability.reset_observability_for_tests()


def test_capture_exception_is_noop_before_init(monkeypatch) -> None:
    observability.reset_observability_for_tests()
    captured = []
    monkeypatch.setattr(observability.sentry_sdk, "capture_exception", captured.append)

    observability.capture_exception(RuntimeError("boom"))

    assert captured == []


def test_sentry_scope_tags_sweep_context() -> None:
    with observability.sentry_scope(user_id="user-1", sweep="renewal"):
        scope = sentry_sdk.get_current_scope()
        assert scope._tags["user_id"] == "user-1"
        assert scope._tags["sweep"] == "renewal"
        assert scope._contexts["contentpilot"] == {"user_id": "user-1", "sweep": "renewal"}
