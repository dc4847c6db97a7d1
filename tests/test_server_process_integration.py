from __future__ import annotations

import json
import os
import socket
import subprocess
import sys
import time
import urllib.request
from pathlib import Path

import pytest


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _get_json(url: str):
    with urllib.request.urlopen(url, timeout=2.0) as resp:
        return json.loads(resp.read().decode("utf-8"))


@pytest.mark.integration
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal semantics")
def test_async_server_start_status_stop(tmp_path: Path) -> None:
    from warmworker.cli import main
    from warmworker.supervisor import PidFile, pid_file_path

    (tmp_path / "ww_it_app.py").write_text(
        "from warmworker import Application, Response\n"
        "app = Application(lambda a, r: Response.json({'path': r.path}))\n",
        encoding="utf-8",
    )
    port = _free_port()
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join([str(tmp_path), env.get("PYTHONPATH", "")]).rstrip(os.pathsep)

    proc = subprocess.Popen(
        [sys.executable, "-m", "warmworker", "start", "--server", "async", "--app", "ww_it_app:app", "--port", str(port)],
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    try:
        deadline = time.time() + 20
        health = None
        while time.time() < deadline:
            try:
                health = _get_json(f"http://127.0.0.1:{port}/_warmworker/health")
                break
            except Exception:
                time.sleep(0.1)
        assert health is not None, "server did not come up"
        assert health["pid"] == proc.pid

        assert _get_json(f"http://127.0.0.1:{port}/hello") == {"path": "/hello"}
        assert PidFile(pid_file_path("async")).primary_pid() == proc.pid

        main(["stop", "--server", "async", "--port", str(port)])
        assert proc.wait(timeout=10) is not None
        assert not pid_file_path("async").exists()
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait(timeout=5)
