from __future__ import annotations

import pytest


def _manager(*, gc=None, memory_limit=None, usage=0, rng=None, scope=None):
    from warmworker.config import GcConfig, WorkerConfig
    from warmworker.hygiene import MemoryHygieneManager
    from warmworker.leak_detector import LeakDetector

    cfg = WorkerConfig(debug=False, gc=gc or GcConfig(enabled=False), memory_limit=memory_limit)
    return MemoryHygieneManager(
        cfg,
        scope=scope,
        leak_detector=LeakDetector(sampler=lambda: (1, 1)),
        rng=rng or (lambda _a, _b: 100),
        usage_reader=lambda: usage,
    )


@pytest.mark.basic
def test_flush_empties_request_maps_but_keeps_server_environ() -> None:
    from warmworker.state import ProcessStateScope, RequestState

    scope = ProcessStateScope(
        RequestState(
            query={"q": "1"},
            form={"name": "x"},
            files={"upload": b"..."},
            cookies={"sid": "abc"},
            environ={"HTTP_HOST": "example.test", "SERVER_SOFTWARE": "warmworker"},
        )
    )
    mgr = _manager(scope=scope)
    mgr.flush()

    state = scope.current()
    assert state.is_request_data_empty()
    assert state.query == {} and state.form == {} and state.files == {} and state.cookies == {}
    assert state.environ == {"SERVER_SOFTWARE": "warmworker"}
    assert mgr.request_count == 1
    assert mgr.leak_detector.request_count == 1


@pytest.mark.basic
def test_gc_policy_probability_and_cycles() -> None:
    from warmworker.config import GcConfig

    always = _manager(gc=GcConfig(enabled=True, probability=50, cycles=1000), rng=lambda _a, _b: 1)
    always.flush()
    # Probability hit, cycle miss (1 % 1000).
    assert always.forced_collections == 1

    never = _manager(gc=GcConfig(enabled=True, probability=50, cycles=1000), rng=lambda _a, _b: 100)
    assert never.garbage_collection() == 0

    every = _manager(gc=GcConfig(enabled=True, probability=0, cycles=1), rng=lambda _a, _b: 1)
    assert every.garbage_collection() == 1


@pytest.mark.basic
def test_interpreter_caches_are_purged_only_when_the_gc_policy_fires(monkeypatch: pytest.MonkeyPatch) -> None:
    import warmworker.hygiene as hygiene
    from warmworker.config import GcConfig

    purges = []
    monkeypatch.setattr(hygiene.re, "purge", lambda: purges.append(1))

    quiet = _manager(gc=GcConfig(enabled=True, probability=0, cycles=1000), rng=lambda _a, _b: 100)
    for _ in range(5):
        quiet.flush()
    assert purges == []
    assert quiet.forced_collections == 0

    fired = _manager(gc=GcConfig(enabled=True, probability=100, cycles=1000), rng=lambda _a, _b: 1)
    fired.flush()
    assert purges == [1]
    assert fired.forced_collections == 1

    assert quiet.clear_interpreter_state(purge_caches=False) is False
    assert quiet.clear_interpreter_state() is True


@pytest.mark.basic
def test_gc_disabled_never_triggers_policy_collections() -> None:
    from warmworker.config import GcConfig

    mgr = _manager(gc=GcConfig(enabled=False, probability=100, cycles=1), rng=lambda _a, _b: 1)
    assert mgr.garbage_collection() == 0
    assert mgr.forced_collections == 0


@pytest.mark.basic
def test_memory_limit_checks() -> None:
    assert _manager(memory_limit="-1", usage=10**12).is_memory_limit_exceeded() is False

    mgr = _manager(memory_limit="100", usage=90)
    assert mgr.is_memory_limit_exceeded() is True
    assert mgr.is_memory_limit_exceeded(threshold=0.95) is False
    assert _manager(memory_limit="100", usage=50).is_memory_limit_exceeded() is False


@pytest.mark.basic
def test_leak_found_during_flush_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    from warmworker.config import WorkerConfig
    from warmworker.hygiene import MemoryHygieneManager
    from warmworker.leak_detector import LeakDetector

    values = iter([1 * 1024 * 1024, 5 * 1024 * 1024, 9 * 1024 * 1024])
    detector = LeakDetector(check_interval=1, sampler=lambda: (next(values), 0))
    mgr = MemoryHygieneManager(WorkerConfig(debug=False), leak_detector=detector, rng=lambda _a, _b: 100)

    with caplog.at_level("WARNING", logger="warmworker.hygiene"):
        for _ in range(3):
            mgr.flush()
    assert any("Memory leak detected" in r.getMessage() for r in caplog.records)


@pytest.mark.basic
def test_gc_stats_shape() -> None:
    stats = _manager().gc_stats()
    assert set(["enabled", "counts", "thresholds", "collections", "forced"]).issubset(stats)
