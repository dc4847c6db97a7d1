"""Control endpoints served by every worker next to the resident application."""

from __future__ import annotations

import os
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field


router = APIRouter(prefix="/_warmworker", tags=["warmworker"])


class HealthResponse(BaseModel):
    status: str = "healthy"
    service: str = "warmworker"
    server: str
    pid: int


class WorkerStatusResponse(BaseModel):
    server: str
    pid: int
    state_scope: str
    serialized: bool
    request_count: int
    max_requests: int
    recycles: int
    recycle_pending: Optional[str] = None
    uptime_s: float
    memory_usage: Dict[str, Any] = Field(default_factory=dict)
    gc: Dict[str, Any] = Field(default_factory=dict)


class MemoryResponse(BaseModel):
    memory_usage: Dict[str, Any] = Field(default_factory=dict)
    limit_exceeded: bool = False
    threshold: float
    leak: Dict[str, Any] = Field(default_factory=dict)
    stats: Dict[str, Any] = Field(default_factory=dict)
    suggestions: List[str] = Field(default_factory=list)


def _server(request: Request):
    return request.app.state.warmworker


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    return HealthResponse(server=_server(request).name, pid=os.getpid())


@router.get("/status", response_model=WorkerStatusResponse)
async def worker_status(request: Request) -> WorkerStatusResponse:
    server = _server(request)
    state = server.lifecycle.worker_state()
    return WorkerStatusResponse(
        server=server.name,
        pid=os.getpid(),
        state_scope=server.scope.kind,
        serialized=bool(server.serialized),
        request_count=state.request_count,
        max_requests=state.max_requests,
        recycles=server.recycles,
        recycle_pending=server.recycle_pending,
        uptime_s=max(0.0, time.time() - state.started_at),
        memory_usage=server.hygiene.memory_usage(),
        gc=server.hygiene.gc_stats(),
    )


@router.get("/memory", response_model=MemoryResponse)
async def worker_memory(request: Request) -> MemoryResponse:
    server = _server(request)
    detector = server.hygiene.leak_detector
    return MemoryResponse(
        memory_usage=server.hygiene.memory_usage(),
        limit_exceeded=server.hygiene.is_memory_limit_exceeded(),
        threshold=server.config.memory_threshold,
        leak=detector.detect_leak().to_dict(),
        stats=detector.get_memory_stats(),
        suggestions=detector.get_cleanup_suggestions(),
    )
