"""
pagecache - Host FastAPI Application
Serves a few generated pages behind the respond-first, process-later cache
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from pagecache import __version__
from pagecache.cache import (
    CachePolicy,
    CacheStats,
    EntryStore,
    PageCacheMiddleware,
    build_entry_store,
)
from config.settings import Settings, settings as default_settings

# Version tracking
APP_VERSION = __version__
APP_NAME = "pagecache"

logger = logging.getLogger("main")

# Demo content; POST /pages/{slug} rewrites it
DEFAULT_PAGES: Dict[str, str] = {
    "about": "A page cache that answers first and regenerates afterwards.",
    "news": "Nothing new yet.",
}


def render_page(title: str, text: str) -> str:
    generated = datetime.now(timezone.utc).isoformat()
    return (
        "<!DOCTYPE html>\n"
        f"<html><head><title>{title}</title></head>"
        f"<body><h1>{title}</h1><p>{text}</p>"
        f"<footer>Generated {generated}</footer></body></html>"
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[EntryStore] = None,
    policy: Optional[CachePolicy] = None,
) -> FastAPI:
    """
    Build the host app with the page cache in front of it.

    Configuration errors (bad schedule, negative TTL) raise here, at startup.
    """
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level.upper())

    app = FastAPI(
        title=APP_NAME,
        description="Full-page cache demo: respond first, process later",
        version=APP_VERSION,
    )
    app.state.pages = dict(DEFAULT_PAGES)
    app.state.cache_stats = CacheStats()
    app.state.cache_store = None

    if settings.cache_enabled:
        store = store or build_entry_store(settings)
        policy = policy or CachePolicy.from_settings(settings)
        app.state.cache_store = store
        app.add_middleware(
            PageCacheMiddleware,
            store=store,
            policy=policy,
            exclude_paths=settings.cache_exclude_paths,
            stats=app.state.cache_stats,
        )
        logger.info(
            f"Page cache enabled [backend={settings.cache_backend}, "
            f"ttl={settings.cache_ttl_seconds}, schedule={settings.cache_refresh_schedule}]"
        )

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "cache": settings.cache_enabled}

    @app.get("/version")
    def version_info():
        """Version information endpoint."""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "full": f"{APP_NAME} {APP_VERSION}",
        }

    @app.get("/cache/stats")
    def cache_stats(request: Request):
        """Get cache statistics."""
        stats = request.app.state.cache_stats.get_stats()
        store = request.app.state.cache_store
        if store is not None:
            stats["entries"] = store.count()
        return stats

    @app.get("/", response_class=HTMLResponse)
    def home(request: Request):
        """Index of the demo pages."""
        links = "".join(
            f'<li><a href="/pages/{slug}">{slug}</a></li>'
            for slug in sorted(request.app.state.pages)
        )
        return HTMLResponse(content=render_page(APP_NAME, f"<ul>{links}</ul>"))

    @app.get("/pages/{slug}", response_class=HTMLResponse)
    def show_page(slug: str, request: Request):
        text = request.app.state.pages.get(slug)
        if text is None:
            raise HTTPException(status_code=404, detail=f"Page {slug} not found")
        return HTMLResponse(content=render_page(slug.title(), text))

    @app.post("/pages/{slug}")
    async def update_page(slug: str, request: Request):
        """Replace a page's text. The cache drops its entry for this URL."""
        body = await request.body()
        request.app.state.pages[slug] = body.decode("utf-8")
        return {"slug": slug, "updated": True}

    @app.get("/go/{slug}")
    def go(slug: str):
        """Redirect to a page; redirects are never cached."""
        return RedirectResponse(url=f"/pages/{slug}", status_code=302)

    return app


app = create_app()
