from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Tuple

import pytest


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return int(proc.pid)


@pytest.mark.basic
def test_process_exists() -> None:
    from warmworker.supervisor import process_exists

    assert process_exists(os.getpid()) is True
    assert process_exists(_dead_pid()) is False
    assert process_exists(0) is False
    assert process_exists(-1) is False


@pytest.mark.basic
def test_pid_file_with_dead_pid_is_stale(tmp_path: Path) -> None:
    from warmworker.supervisor import PidFile

    pf = PidFile(tmp_path / "warmworker_async.pid")
    pf.write([_dead_pid()])

    assert pf.is_running() is False
    assert pf.cleanup_stale() is True
    assert not pf.path.exists()
    assert pf.cleanup_stale() is False


@pytest.mark.basic
def test_pid_file_with_live_pid_is_running(tmp_path: Path) -> None:
    from warmworker.supervisor import PidFile

    pf = PidFile(tmp_path / "nested" / "warmworker_serial.pid")
    pf.write([os.getpid()])
    pf.append(_dead_pid())

    assert pf.is_running() is True
    assert pf.primary_pid() == os.getpid()
    assert pf.live_pids() == [os.getpid()]
    assert pf.cleanup_stale() is False
    assert pf.path.exists()


@pytest.mark.basic
def test_pid_file_read_skips_garbage_and_duplicates(tmp_path: Path) -> None:
    from warmworker.supervisor import PidFile

    path = tmp_path / "x.pid"
    path.write_text("123\n\nnot-a-pid\n123\n-4\n456\n", encoding="utf-8")
    pf = PidFile(path)
    assert pf.read() == [123, 456]

    pf.remove()
    pf.remove()
    assert pf.read() == []
    assert pf.primary_pid() is None


@pytest.mark.basic
def test_pid_file_records_the_bound_port(tmp_path: Path) -> None:
    from warmworker.supervisor import PidFile

    pf = PidFile(tmp_path / "x.pid")
    assert pf.read_port() is None

    pf.write([os.getpid()], port=8765)
    assert pf.port_path == tmp_path / "x.port"
    assert pf.read() == [os.getpid()]
    assert pf.read_port() == 8765

    pf.port_path.write_text("not-a-port\n", encoding="utf-8")
    assert pf.read_port() is None
    pf.port_path.write_text("70000\n", encoding="utf-8")
    assert pf.read_port() is None

    pf.remove()
    assert not pf.path.exists()
    assert not pf.port_path.exists()



@pytest.mark.basic
def test_pid_file_path_uses_runtime_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from warmworker.supervisor import pid_file_path, runtime_dir

    monkeypatch.setenv("WARMWORKER_RUNTIME_DIR", str(tmp_path))
    assert runtime_dir() == tmp_path.resolve()
    assert pid_file_path("coroutine") == tmp_path.resolve() / "warmworker_coroutine.pid"
    assert pid_file_path("serial", directory=str(tmp_path / "other")).parent == (tmp_path / "other").resolve()


@pytest.mark.basic
def test_kill_process_by_port_uses_lsof_and_skips_self(monkeypatch: pytest.MonkeyPatch) -> None:
    import warmworker.supervisor as sv

    calls: List[List[str]] = []

    def _fake_run(args, **kwargs):
        calls.append(list(args))
        return SimpleNamespace(stdout=f"123\n456\n\n{os.getpid()}\n", returncode=0)

    killed: List[Tuple[int, bool]] = []

    def _fake_kill(pid: int, force: bool = False) -> bool:
        killed.append((pid, force))
        return pid == 123

    monkeypatch.setattr(sv, "is_windows", lambda: False)
    monkeypatch.setattr(sv.subprocess, "run", _fake_run)
    monkeypatch.setattr(sv, "kill_process", _fake_kill)
    monkeypatch.setattr(sv, "process_exists", lambda pid: False)

    out = sv.kill_process_by_port(8000, force=True)
    assert out == [123]
    assert calls == [["lsof", "-t", "-i", "tcp:8000", "-sTCP:LISTEN"]]
    assert killed == [(123, True), (456, True)]


@pytest.mark.basic
def test_kill_process_by_port_with_nothing_listening(monkeypatch: pytest.MonkeyPatch) -> None:
    import warmworker.supervisor as sv

    monkeypatch.setattr(sv, "is_windows", lambda: False)
    monkeypatch.setattr(sv.subprocess, "run", lambda args, **kwargs: SimpleNamespace(stdout="", returncode=1))

    assert sv.kill_process_by_port(8000) == []
    assert sv.kill_process_by_port(0) == []


@pytest.mark.basic
def test_kill_process_by_port_omits_pids_that_outlive_the_signal(monkeypatch: pytest.MonkeyPatch) -> None:
    import warmworker.supervisor as sv

    monkeypatch.setattr(sv, "find_pids_by_port", lambda port: [123, 456])
    monkeypatch.setattr(sv, "kill_process", lambda pid, force=False: True)
    # 456 accepted the signal but is still alive when the wait runs out.
    monkeypatch.setattr(sv, "process_exists", lambda pid: pid == 456)

    assert sv.kill_process_by_port(8000, timeout_s=0.05) == [123]



@pytest.mark.basic
def test_find_pids_by_port_parses_netstat_on_windows(monkeypatch: pytest.MonkeyPatch) -> None:
    import warmworker.supervisor as sv

    netstat = "\n".join(
        [
            "Active Connections",
            "",
            "  Proto  Local Address          Foreign Address        State           PID",
            "  TCP    0.0.0.0:8000           0.0.0.0:0              LISTENING       4321",
            "  TCP    127.0.0.1:8000         127.0.0.1:51000        ESTABLISHED     4321",
            "  TCP    0.0.0.0:18000          0.0.0.0:0              LISTENING       999",
            "  TCP    127.0.0.1:8000         127.0.0.1:51002        ESTABLISHED     555",
            "  TCP    127.0.0.1:8000         127.0.0.1:51001        TIME_WAIT       0",
            "  UDP    0.0.0.0:8000           *:*                                    777",
        ]
    )
    monkeypatch.setattr(sv, "is_windows", lambda: True)
    monkeypatch.setattr(sv.subprocess, "run", lambda args, **kwargs: SimpleNamespace(stdout=netstat, returncode=0))

    assert sv.find_pids_by_port(8000) == [4321]


@pytest.mark.basic
def test_find_pids_by_port_falls_back_to_psutil_when_lsof_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    import warmworker.supervisor as sv

    def _missing(args, **kwargs):
        raise FileNotFoundError(args[0])

    conns = [
        SimpleNamespace(laddr=SimpleNamespace(port=8000), pid=42, status=sv.psutil.CONN_LISTEN),
        SimpleNamespace(laddr=SimpleNamespace(port=8000), pid=41, status=sv.psutil.CONN_ESTABLISHED),
        SimpleNamespace(laddr=SimpleNamespace(port=9000), pid=43, status=sv.psutil.CONN_LISTEN),
        SimpleNamespace(laddr=(), pid=44, status=sv.psutil.CONN_LISTEN),
    ]
    monkeypatch.setattr(sv, "is_windows", lambda: False)
    monkeypatch.setattr(sv.subprocess, "run", _missing)
    monkeypatch.setattr(sv.psutil, "net_connections", lambda kind="tcp": conns)

    assert sv.find_pids_by_port(8000) == [42]


@pytest.mark.basic
def test_terminate_pids_escalates_to_force(monkeypatch: pytest.MonkeyPatch) -> None:
    import warmworker.supervisor as sv

    alive: Dict[int, bool] = {101: True, 202: True}
    signals: List[Tuple[int, bool]] = []

    def _fake_tree(pid: int, force: bool = False) -> bool:
        signals.append((pid, force))
        # 202 ignores SIGTERM.
        if force or pid == 101:
            alive[pid] = False
        return True

    monkeypatch.setattr(sv, "process_exists", lambda pid: alive.get(pid, False))
    monkeypatch.setattr(sv, "kill_process_tree", _fake_tree)

    survivors = sv.terminate_pids([101, 202, 101], timeout_s=0.1)
    assert survivors == []
    assert signals == [(101, False), (202, False), (202, True)]


@pytest.mark.basic
def test_kill_process_tree_on_windows_uses_taskkill(monkeypatch: pytest.MonkeyPatch) -> None:
    import warmworker.supervisor as sv

    calls: List[List[str]] = []

    def _fake_run(args, **kwargs):
        calls.append(list(args))
        return SimpleNamespace(stdout="", returncode=0)

    monkeypatch.setattr(sv, "is_windows", lambda: True)
    monkeypatch.setattr(sv.subprocess, "run", _fake_run)

    assert sv.kill_process_tree(1234) is True
    assert sv.kill_process_tree(1234, force=True) is True
    assert calls == [["taskkill", "/T", "/PID", "1234"], ["taskkill", "/F", "/T", "/PID", "1234"]]


@pytest.mark.basic
def test_server_compatibility_recommends_an_entry() -> None:
    from warmworker.supervisor import recommended_server, server_compatibility

    compat = server_compatibility()
    assert set(compat) == {"coroutine", "serial", "async"}
    assert compat[recommended_server()]["recommended"] is True
