from __future__ import annotations

import os
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_warmworker_env(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory) -> None:
    # A developer shell may export WARMWORKER_* for a real server; tests must never see it.
    for key in list(os.environ.keys()):
        if key.startswith("WARMWORKER_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("APP_DEBUG", raising=False)

    # PID files land under tmp so tests cannot stop (or claim) a real server.
    base = Path(str(tmp_path_factory.mktemp("warmworker-runtime")))
    monkeypatch.setenv("WARMWORKER_RUNTIME_DIR", str(base))
