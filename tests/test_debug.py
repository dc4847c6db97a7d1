from __future__ import annotations

import pytest


@pytest.mark.basic
def test_explicit_setting_wins(monkeypatch: pytest.MonkeyPatch) -> None:
    from warmworker.config import WorkerConfig
    from warmworker.debug import debug_services, is_debug_mode

    monkeypatch.setenv("APP_DEBUG", "1")
    assert is_debug_mode(WorkerConfig(debug=False)) is False
    assert debug_services(WorkerConfig(debug=False)) == []
    assert is_debug_mode(WorkerConfig(debug=True)) is True
    assert "trace" in debug_services(WorkerConfig(debug=True))


@pytest.mark.basic
def test_env_and_app_flags(monkeypatch: pytest.MonkeyPatch) -> None:
    import warmworker.debug as dbg
    from warmworker.config import WorkerConfig
    from warmworker.container import Application

    monkeypatch.setattr(dbg, "has_trace_tools", lambda: False)
    assert dbg.is_debug_mode(WorkerConfig()) is False

    monkeypatch.setenv("WARMWORKER_DEBUG", "true")
    assert dbg.is_debug_mode(WorkerConfig()) is True
    monkeypatch.delenv("WARMWORKER_DEBUG")

    assert dbg.is_debug_mode(WorkerConfig(), Application(debug=True)) is True
    assert dbg.is_debug_mode(WorkerConfig(), Application(debug=False)) is False


@pytest.mark.basic
def test_debug_info_shape() -> None:
    from warmworker.config import WorkerConfig
    from warmworker.debug import debug_info

    info = debug_info(WorkerConfig(debug=True))
    assert info["debug_mode"] is True
    assert info["should_preserve_output"] is True
    assert info["env"]["WARMWORKER_DEBUG"] == "undefined"
    assert info["expose_error_details"] is True


@pytest.mark.basic
def test_error_details_need_an_explicit_debug_switch(monkeypatch: pytest.MonkeyPatch) -> None:
    import warmworker.debug as dbg
    from warmworker.config import WorkerConfig
    from warmworker.container import Application

    # A tracer alone (coverage, profilers, debuggers) turns on debug resets only.
    monkeypatch.setattr(dbg, "has_trace_tools", lambda: True)
    assert dbg.is_debug_mode(WorkerConfig(), Application(debug=False)) is True
    assert dbg.expose_error_details(WorkerConfig(), Application(debug=False)) is False
    assert dbg.debug_info(WorkerConfig())["expose_error_details"] is False

    assert dbg.expose_error_details(WorkerConfig(debug=True)) is True
    assert dbg.expose_error_details(WorkerConfig(debug=False)) is False
    assert dbg.expose_error_details(WorkerConfig(), Application(debug=True)) is True
    monkeypatch.setenv("APP_DEBUG", "yes")
    assert dbg.expose_error_details(WorkerConfig()) is True
