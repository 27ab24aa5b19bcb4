"""
Serve/store controller: respond first, process later.

One controller runs per request:

    LOOKUP ─┬─ fresh entry ──> SERVE_FRESH                   (handler skipped)
            ├─ stale entry ──> SERVE_STALE_THEN_CAPTURE ─┐
            └─ no entry ─────> SERVE_MISS_THEN_CAPTURE ──┴─> CAPTURING ─> COMMIT | CANCEL

Non-GET requests invalidate the key and go straight to BYPASS.
"""
import gzip
import logging
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from starlette.concurrency import run_in_threadpool

from pagecache.exceptions import EntryStoreError, MethodNotAllowed

from .core import CacheEntry, CacheState, CaptureBuffer, RequestContext
from .observer import ResponseStatusObserver
from .policy import CachePolicy
from .staleness import StalenessDecision
from .store import EntryStore, derive_key

logger = logging.getLogger("cache.controller")

Message = Dict[str, Any]
Send = Callable[[Message], Awaitable[None]]
Handler = Callable[[Send], Awaitable[None]]

Headers = List[Tuple[bytes, bytes]]

# Replaced by the controller whenever it rewrites a captured body
_RECOMPUTED_HEADERS = (b"content-length", b"cache-control", b"expires", b"pragma")


def _header(name: str, value: str) -> Tuple[bytes, bytes]:
    return name.encode("latin-1"), value.encode("latin-1")


def _add_vary(headers: Headers, field_name: str) -> None:
    """Add `field_name` to the Vary header, merging into one already present."""
    for i, (name, value) in enumerate(headers):
        if name.lower() != b"vary":
            continue
        current = value.decode("latin-1")
        listed = [part.strip().lower() for part in current.split(",")]
        if field_name.lower() not in listed and "*" not in listed:
            headers[i] = (name, f"{current}, {field_name}".encode("latin-1"))
        return
    headers.append(_header("vary", field_name))


class ServeStoreController:
    """
    Orchestrates lookup, early transmission, capture and commit for one request.

    Args:
        context: Request identity and client preferences
        store: Shared entry store
        policy: Cache configuration
        send: Transport send callable for this request
    """

    def __init__(
        self,
        context: RequestContext,
        store: EntryStore,
        policy: CachePolicy,
        send: Send,
    ):
        self.context = context
        self.store = store
        self.policy = policy
        self.send = send
        self.key = derive_key(context.host, context.path, context.query)
        self.state = CacheState.START
        self.capture: Optional[CaptureBuffer] = None
        self.observer: Optional[ResponseStatusObserver] = None
        self.served_from_store = False

    def _transition(self, state: CacheState) -> None:
        logger.debug(f"{self.key[:12]}: {self.state.value} -> {state.value}")
        self.state = state

    async def run(self, handler: Handler) -> CacheState:
        """
        Drive the request to a terminal state.

        Args:
            handler: Runs the downstream application, writing through the
                send callable it is given

        Returns:
            The terminal CacheState
        """
        self._transition(CacheState.LOOKUP)

        if not self.context.is_cacheable_method:
            await self._bypass(handler)
            return self.state

        now = self.policy.clock()
        entry = await run_in_threadpool(self.store.get, self.key)

        if entry is None:
            logger.info(f"CACHE MISS: {self.context.host}{self.context.path} [{self.key[:12]}]")
            self._transition(CacheState.SERVE_MISS_THEN_CAPTURE)
            await self._capture(handler, already_sent=False)
            return self.state

        decision = self.policy.evaluator(now).evaluate(entry.stored_at, now)

        if not decision.is_stale:
            logger.info(
                f"CACHE HIT (fresh): {self.key[:12]} [age={entry.age_seconds(now):.1f}s]"
            )
            self._transition(CacheState.SERVE_FRESH)
            await self._send_entry(entry, decision, now, source="fresh")
            return self.state

        logger.info(
            f"CACHE HIT (stale, regenerating): {self.key[:12]} "
            f"[age={entry.age_seconds(now):.1f}s, ttl_expired={decision.ttl_expired}, "
            f"schedule_crossed={decision.schedule_crossed}]"
        )
        self._transition(CacheState.SERVE_STALE_THEN_CAPTURE)
        await self._send_entry(entry, decision, now, source="stale")
        await self._capture(handler, already_sent=True)
        return self.state

    # =========================================================================
    # Bypass
    # =========================================================================

    async def _bypass(self, handler: Handler) -> None:
        method = self.context.method
        self._transition(CacheState.BYPASS)

        if self.context.is_read_method:
            # HEAD: a read, but its empty body must never become an entry
            await handler(self.send)
            return

        await run_in_threadpool(self.store.delete, self.key)
        logger.info(f"INVALIDATED ({method}): {self.key[:12]}")

        if self.policy.reject_unsafe_methods:
            raise MethodNotAllowed(method, self.key)

        await handler(self.send)

    # =========================================================================
    # Capture
    # =========================================================================

    async def _capture_send(self, message: Message) -> None:
        """Stands in for the transport while the handler runs."""
        kind = message["type"]
        if kind == "http.response.start":
            headers = list(message.get("headers", []))
            self.capture.start(message["status"], headers)
            self.observer.observe_start(message["status"], headers)
        elif kind == "http.response.body":
            self.capture.write(message.get("body", b""))
            if not message.get("more_body", False):
                self.capture.close()
        else:
            logger.debug(f"Ignoring {kind} message during capture")

    async def _capture(self, handler: Handler, already_sent: bool) -> None:
        self.capture = CaptureBuffer()
        self.observer = ResponseStatusObserver(
            headers_final=already_sent,
            content_type=self.policy.content_type,
        )
        self._transition(CacheState.CAPTURING)

        try:
            await handler(self._capture_send)
        except Exception as exc:
            self.observer.observe_error(exc)
            if not already_sent:
                await self._cancel(already_sent)
                raise
            logger.exception(f"Handler failed after stale response was sent: {self.key[:12]}")
            await self._cancel(already_sent)
            return

        self.observer.observe_end(self.capture.closed)

        entry = None
        if self.observer.committable:
            entry = await self._commit(already_sent)
        else:
            await self._cancel(already_sent)

        if not already_sent:
            await self._send_captured(entry)

    async def _commit(self, already_sent: bool) -> Optional[CacheEntry]:
        body = self.capture.body
        try:
            entry = await run_in_threadpool(self.store.put, self.key, body)
        except EntryStoreError:
            if not already_sent:
                raise
            # The client already has its response; report and move on
            logger.exception(f"Failed to store regenerated response: {self.key[:12]}")
            self._transition(CacheState.CANCEL)
            return None

        logger.info(f"CACHE STORED: {self.key[:12]} [{entry.size} bytes]")
        self._transition(CacheState.COMMIT)
        return entry

    async def _cancel(self, already_sent: bool) -> None:
        reason = self.observer.cancel_reason if self.observer else None
        try:
            await run_in_threadpool(self.store.delete, self.key)
        except EntryStoreError:
            if not already_sent:
                raise
            logger.exception(f"Failed to remove cancelled entry: {self.key[:12]}")

        logger.info(f"CACHE DISCARDED: {self.key[:12]} [{reason or 'not cacheable'}]")
        self._transition(CacheState.CANCEL)

    # =========================================================================
    # Transmission
    # =========================================================================

    def _encode(self, body: bytes, headers: Headers) -> bytes:
        """Apply the body filter, then gzip when the client accepts it."""
        body = self.policy.apply_filter(body)
        if self.policy.compress:
            _add_vary(headers, "Accept-Encoding")
            if self.context.accepts_encoding("gzip"):
                body = gzip.compress(body, compresslevel=self.policy.compress_level, mtime=0)
                headers.append(_header("content-encoding", "gzip"))
        headers.append(_header("content-length", str(len(body))))
        return body

    def _cache_headers(self, decision: StalenessDecision, now: datetime) -> Headers:
        max_age = decision.max_age(now)
        if max_age is None:
            return []
        expires_at = decision.expires_at.astimezone(timezone.utc)
        return [
            _header("cache-control", f"max-age={max_age}"),
            _header("expires", format_datetime(expires_at, usegmt=True)),
        ]

    async def _send_entry(
        self,
        entry: CacheEntry,
        decision: StalenessDecision,
        now: datetime,
        source: str,
    ) -> None:
        headers: Headers = [_header("content-type", self.policy.content_type)]
        body = self._encode(entry.body, headers)
        headers.extend(self._cache_headers(decision, now))
        headers.append(_header("x-cache-source", source))
        headers.append(_header("connection", "close"))

        await self.send({"type": "http.response.start", "status": 200, "headers": headers})
        await self.send({"type": "http.response.body", "body": body, "more_body": False})
        self.served_from_store = True

    async def _send_captured(self, entry: Optional[CacheEntry]) -> None:
        """Relay the buffered handler response on the miss path."""
        if self.capture.status is None:
            raise RuntimeError("Handler returned without starting a response")

        status = self.capture.status
        already_encoded = self.capture.header("content-encoding") is not None

        headers: Headers = [
            (name, value)
            for name, value in self.capture.headers
            if name.lower() not in _RECOMPUTED_HEADERS
        ]

        if status == 200 and not already_encoded:
            body = self._encode(self.capture.body, headers)
        else:
            body = self.policy.apply_filter(self.capture.body)
            headers.append(_header("content-length", str(len(body))))

        if entry is not None:
            now = self.policy.clock()
            decision = self.policy.evaluator(now).evaluate(entry.stored_at, now)
            headers.extend(self._cache_headers(decision, now))
            headers.append(_header("x-cache-source", "upstream"))

        await self.send({"type": "http.response.start", "status": status, "headers": headers})
        await self.send({"type": "http.response.body", "body": body, "more_body": False})
