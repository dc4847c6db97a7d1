from __future__ import annotations

from typing import Dict, Optional, Type

from ..config import SUPPORTED_SERVERS, WorkerConfig
from ..container import ResidentApplication
from ..errors import UnsupportedServerError
from .async_server import AsyncServer
from .base import BaseServer
from .coroutine import CoroutineServer
from .serial import SerialServer

SERVER_TYPES: Dict[str, Type[BaseServer]] = {
    CoroutineServer.name: CoroutineServer,
    SerialServer.name: SerialServer,
    AsyncServer.name: AsyncServer,
}


def server_class(name: str) -> Type[BaseServer]:
    key = str(name or "").strip().lower()
    cls = SERVER_TYPES.get(key)
    if cls is None:
        raise UnsupportedServerError(key or str(name), SUPPORTED_SERVERS)
    return cls


def create_server(app: ResidentApplication, config: Optional[WorkerConfig] = None, *, name: Optional[str] = None) -> BaseServer:
    cfg = config or WorkerConfig()
    return server_class(name or cfg.server)(app, cfg)


__all__ = [
    "AsyncServer",
    "BaseServer",
    "CoroutineServer",
    "SERVER_TYPES",
    "SerialServer",
    "create_server",
    "server_class",
]
