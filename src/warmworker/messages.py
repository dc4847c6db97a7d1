from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


@dataclass
class Request:
    """Normalized inbound request handed to the resident application."""

    method: str = "GET"
    uri: str = "/"
    path: str = "/"
    query_string: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    form: Dict[str, Any] = field(default_factory=dict)
    files: Dict[str, Any] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    remote_addr: Optional[str] = None
    remote_port: Optional[int] = None
    server: Dict[str, Any] = field(default_factory=dict)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        wanted = str(name).lower()
        for k, v in self.headers.items():
            if str(k).lower() == wanted:
                return v
        return default

    def json(self) -> Any:
        if not self.body:
            return None
        return json.loads(self.body.decode("utf-8", errors="replace"))


@dataclass
class Response:
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @classmethod
    def json(cls, data: Any, status: int = 200, headers: Optional[Dict[str, str]] = None) -> "Response":
        payload = json.dumps(data, ensure_ascii=False, default=str).encode("utf-8")
        out = {"content-type": "application/json"}
        out.update(headers or {})
        return cls(status=int(status), headers=out, body=payload)

    @classmethod
    def text(cls, content: Union[str, bytes], status: int = 200, headers: Optional[Dict[str, str]] = None) -> "Response":
        body = content if isinstance(content, bytes) else str(content).encode("utf-8")
        out = {"content-type": "text/plain; charset=utf-8"}
        out.update(headers or {})
        return cls(status=int(status), headers=out, body=body)

    def json_body(self) -> Any:
        return json.loads(self.body.decode("utf-8", errors="replace")) if self.body else None
