"""
Response status observation for captured handler output.

Once a stale body has gone out, the client's status line and headers
are final. Whatever the handler later tries to say about the response
is only recorded here and decides whether its output may replace the
stored entry.
"""
import logging
from typing import List, Optional, Tuple

logger = logging.getLogger("cache.observer")

# Headers that mean the handler wants the client to go somewhere else
_REDIRECT_HEADERS = (b"location", b"refresh")


def _media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


class ResponseStatusObserver:
    """
    Tracks the handler's terminal status and any cancellation signal.

    Args:
        headers_final: True when the client response was already sent,
            so any attempt to redirect or fail is a cancellation.
        content_type: Content-Type stored bodies are served with. A
            response declaring a different media type is not stored.
    """

    def __init__(self, headers_final: bool = False, content_type: Optional[str] = None):
        self.headers_final = headers_final
        self.media_type = _media_type(content_type) if content_type else None
        self.status: Optional[int] = None
        self.cancel_reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_reason is not None

    @property
    def committable(self) -> bool:
        """True only for an observed status of exactly 200 with no cancellation."""
        return not self.cancelled and self.status == 200

    def cancel(self, reason: str) -> None:
        if self.cancel_reason is None:
            self.cancel_reason = reason
            logger.debug(f"Capture cancelled: {reason}")

    def observe_start(self, status: int, headers: List[Tuple[bytes, bytes]]) -> None:
        """Record the status and headers the handler tried to send."""
        if self.status is not None:
            self.cancel(f"response restarted with status {status}")
        self.status = status

        if status != 200:
            self.cancel(f"status {status}")
            return

        for name, value in headers:
            name = name.lower()
            # Entries hold the plain body; an inner encoder's output is not one
            if name == b"content-encoding" and value.strip().lower() != b"identity":
                self.cancel(f"body already encoded as {value.decode('latin-1')}")
                return
            if name == b"content-type" and self.media_type is not None:
                declared = _media_type(value.decode("latin-1"))
                if declared != self.media_type:
                    self.cancel(f"content type {declared} is not {self.media_type}")
                    return

        if self.headers_final:
            for name, _ in headers:
                if name.lower() in _REDIRECT_HEADERS:
                    self.cancel(f"{name.decode('latin-1')} header after response was sent")
                    return

    def observe_error(self, exc: BaseException) -> None:
        """The handler raised before finishing its response."""
        self.cancel(f"handler raised {type(exc).__name__}")

    def observe_end(self, body_complete: bool) -> None:
        """Called when the handler returns; flags incomplete or status-less output."""
        if self.status is None:
            logger.warning("Handler finished without a response status; skipping commit")
            self.cancel("no status observed")
        elif not body_complete:
            self.cancel("response body incomplete")
