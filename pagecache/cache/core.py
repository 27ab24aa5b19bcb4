"""
Core cache data structures.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class CacheState(Enum):
    """States of the serve/store protocol for one request."""
    START = "start"
    LOOKUP = "lookup"
    BYPASS = "bypass"                                        # Non-GET, handler runs uncached
    SERVE_FRESH = "serve_fresh"                              # Terminal, handler skipped
    SERVE_STALE_THEN_CAPTURE = "serve_stale_then_capture"    # Old body sent, regenerate
    SERVE_MISS_THEN_CAPTURE = "serve_miss_then_capture"      # Nothing to send yet
    CAPTURING = "capturing"
    COMMIT = "commit"                                        # Terminal, entry written
    CANCEL = "cancel"                                        # Terminal, entry removed


TERMINAL_STATES = frozenset({
    CacheState.BYPASS,
    CacheState.SERVE_FRESH,
    CacheState.COMMIT,
    CacheState.CANCEL,
})


@dataclass(frozen=True)
class CacheEntry:
    """
    A stored response body and the time it was written.

    The body is always the uncompressed, unfiltered handler output.
    """
    key: str
    body: bytes
    stored_at: datetime

    @property
    def size(self) -> int:
        return len(self.body)

    def age_seconds(self, now: datetime) -> float:
        """Seconds between the write and `now`."""
        return (now - self.stored_at).total_seconds()


@dataclass
class CaptureBuffer:
    """
    Handler output diverted away from the client for one request.

    Collects the response start (status + headers) and every body chunk.
    """
    status: Optional[int] = None
    headers: List[Tuple[bytes, bytes]] = field(default_factory=list)
    chunks: List[bytes] = field(default_factory=list)
    closed: bool = False

    def start(self, status: int, headers: List[Tuple[bytes, bytes]]) -> None:
        self.status = status
        self.headers = list(headers)

    def write(self, chunk: bytes) -> None:
        if chunk:
            self.chunks.append(chunk)

    def close(self) -> None:
        self.closed = True

    @property
    def body(self) -> bytes:
        return b"".join(self.chunks)

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive lookup of a captured header."""
        wanted = name.lower().encode("latin-1")
        for key, value in self.headers:
            if key.lower() == wanted:
                return value.decode("latin-1")
        return None


def _parse_accept_encoding(value: str) -> Dict[str, float]:
    """Parse an Accept-Encoding header into {coding: quality}."""
    codings: Dict[str, float] = {}
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        coding, _, params = part.partition(";")
        quality = 1.0
        params = params.strip()
        if params.startswith("q="):
            try:
                quality = float(params[2:])
            except ValueError:
                quality = 0.0
        codings[coding.strip().lower()] = quality
    return codings


@dataclass(frozen=True)
class RequestContext:
    """
    Request-scoped inputs consumed by the cache controller.

    Built once per request from the ASGI scope and handed to the
    controller explicitly.
    """
    method: str
    host: str
    path: str
    query: str = ""
    accept_encoding: str = ""

    @classmethod
    def from_scope(cls, scope: Dict[str, Any]) -> "RequestContext":
        headers = {
            key.decode("latin-1").lower(): value.decode("latin-1")
            for key, value in scope.get("headers", [])
        }
        host = headers.get("host")
        if not host:
            server = scope.get("server")
            if server:
                host = f"{server[0]}:{server[1]}" if server[1] else server[0]
            else:
                host = ""
        return cls(
            method=scope.get("method", "GET").upper(),
            host=host,
            path=scope.get("path", "/"),
            query=scope.get("query_string", b"").decode("latin-1"),
            accept_encoding=headers.get("accept-encoding", ""),
        )

    @property
    def is_cacheable_method(self) -> bool:
        return self.method == "GET"

    @property
    def is_read_method(self) -> bool:
        return self.method in ("GET", "HEAD")

    def accepts_encoding(self, coding: str) -> bool:
        """True if the client lists `coding` with a non-zero quality."""
        return _parse_accept_encoding(self.accept_encoding).get(coding.lower(), 0.0) > 0
