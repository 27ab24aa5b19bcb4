"""
ASGI middleware that puts the page cache in front of an application.
"""
import logging
import threading
from typing import Any, Dict, Iterable, Optional

from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from pagecache.exceptions import MethodNotAllowed

from .controller import ServeStoreController
from .core import TERMINAL_STATES, CacheState, RequestContext
from .policy import CachePolicy
from .store import EntryStore

logger = logging.getLogger("cache.middleware")


class CacheStats:
    """Thread-safe counters of request outcomes."""

    def __init__(self):
        self._lock = threading.Lock()
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "bypassed": 0,
            "stored": 0,
            "discarded": 0,
            "errors": 0,
        }

    def record(self, controller: ServeStoreController) -> None:
        with self._lock:
            if controller.state not in TERMINAL_STATES:
                # Failed before the protocol finished, e.g. on a store read
                self._stats["errors"] += 1
                return
            if controller.state == CacheState.BYPASS:
                self._stats["bypassed"] += 1
                return
            if controller.state == CacheState.SERVE_FRESH:
                self._stats["hits_fresh"] += 1
                return

            if controller.served_from_store:
                self._stats["hits_stale"] += 1
            else:
                self._stats["misses"] += 1

            if controller.state == CacheState.COMMIT:
                self._stats["stored"] += 1
            elif controller.state == CacheState.CANCEL:
                self._stats["discarded"] += 1

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
            total_requests = total_hits + self._stats["misses"]
            hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0

            return {
                **self._stats,
                "hit_rate_percent": round(hit_rate, 1),
            }


class PageCacheMiddleware:
    """
    Full-page cache for an ASGI app.

    Entries hold only the body. Everything served from the store carries
    `policy.content_type`, so responses declaring another media type
    (JSON APIs, images) pass through and are never stored. Responses an
    inner layer already compressed are relayed but not stored either.

    Usage:
        app.add_middleware(
            PageCacheMiddleware,
            store=FileEntryStore(Path("./cache")),
            policy=CachePolicy(ttl=timedelta(minutes=5)),
        )
    """

    def __init__(
        self,
        app: ASGIApp,
        store: EntryStore,
        policy: Optional[CachePolicy] = None,
        exclude_paths: Iterable[str] = (),
        stats: Optional[CacheStats] = None,
    ):
        self.app = app
        self.store = store
        self.policy = policy or CachePolicy()
        self.exclude_paths = tuple(exclude_paths)
        self.stats = stats if stats is not None else CacheStats()

    def _is_excluded(self, path: str) -> bool:
        return any(
            path == prefix or path.startswith(prefix.rstrip("/") + "/")
            for prefix in self.exclude_paths
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or self._is_excluded(scope.get("path", "")):
            await self.app(scope, receive, send)
            return

        context = RequestContext.from_scope(scope)
        controller = ServeStoreController(context, self.store, self.policy, send)

        async def call_next(downstream_send: Send) -> None:
            await self.app(scope, receive, downstream_send)

        try:
            await controller.run(call_next)
        except MethodNotAllowed as exc:
            logger.info(f"Rejected {exc.method} {context.path}")
            response = PlainTextResponse(str(exc), status_code=405, headers={"Allow": "GET"})
            await response(scope, receive, send)
        finally:
            self.stats.record(controller)
