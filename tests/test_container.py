from __future__ import annotations

from pathlib import Path

import pytest


@pytest.mark.basic
def test_service_container_make_delete_rebuild() -> None:
    from warmworker.container import ServiceContainer

    built = []
    c = ServiceContainer()
    c.bind("db", lambda: built.append(1) or object())

    first = c.make("db")
    assert c.make("db") is first
    c.delete("db")
    assert not c.resolved("db")
    assert c.make("db") is not first
    assert len(built) == 2

    with pytest.raises(KeyError):
        c.make("missing")


@pytest.mark.basic
def test_unshared_bindings_build_every_time() -> None:
    from warmworker.container import ServiceContainer

    c = ServiceContainer()
    c.bind("tmp", object, shared=False)
    assert c.make("tmp") is not c.make("tmp")
    assert not c.resolved("tmp")


@pytest.mark.basic
def test_request_scoped_services_live_in_the_bound_request() -> None:
    from warmworker.container import ServiceContainer, SupportsRequestScope
    from warmworker.state import ContextStateScope, RequestState

    scope = ContextStateScope()
    c = ServiceContainer()
    assert isinstance(c, SupportsRequestScope)
    c.use_request_scope(scope, ["request", "db"])
    c.bind("db", object)
    c.bind("config", object)

    config = c.make("config")
    with scope.bind(RequestState()) as first:
        c.instance("request", "first")
        db = c.make("db")
        assert c.make("db") is db
        assert c.make("config") is config
        assert first.services == {"request": "first", "db": db}

        with scope.bind(RequestState()) as second:
            assert not c.resolved("request")
            assert c.make("db") is not db
            c.delete("db")
            assert second.services == {}

        assert c.make("request") == "first"
        assert c.make("db") is db
        c.delete("request")
        assert not c.has("request")

    # Outside a request the shared registry never held the scoped entries.
    assert not c.resolved("db")
    assert not c.has("request")
    assert c.resolved("config")



@pytest.mark.basic
def test_load_application_from_module(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from warmworker.container import load_application

    (tmp_path / "ww_sample_app.py").write_text(
        "from warmworker import Application, Response\n"
        "app = Application(lambda a, r: Response.text('hi'))\n"
        "def make_app():\n"
        "    return Application(lambda a, r: Response.text('factory'))\n"
        "not_an_app = 42\n",
        encoding="utf-8",
    )
    monkeypatch.syspath_prepend(str(tmp_path))

    assert load_application("ww_sample_app:app").handle(None).body == b"hi"
    assert load_application("ww_sample_app:make_app").handle(None).body == b"factory"


@pytest.mark.basic
@pytest.mark.parametrize("target", ["no_colon", "ww_missing_module:app", "json:nope", "json:dumps"])
def test_load_application_errors(target: str) -> None:
    from warmworker.container import load_application
    from warmworker.errors import ApplicationLoadError

    with pytest.raises(ApplicationLoadError):
        load_application(target)
