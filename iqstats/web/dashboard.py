# iqstats/web/dashboard.py
# Leaderboard & dashboard statistics: FastAPI JSON surface
# Run:
#   python -m uvicorn iqstats.web.dashboard:app --host 0.0.0.0 --port 8000

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from iqstats import health
from iqstats.config import settings
from iqstats.datasource.factory import close_datasource, make_datasource
from iqstats.logging_config import setup_logging
from iqstats.services.analytics import Analytics

APP_TITLE = "IQ Test Analytics"

log = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    datasource = make_datasource(settings)
    app.state.analytics = Analytics.from_settings(datasource, settings)
    await app.state.analytics.warm_up()
    log.info(f"🚀 {APP_TITLE} ready (backend={settings.DATA_BACKEND})")
    try:
        yield
    finally:
        await close_datasource(datasource)
        log.info("👋 Data source closed")


def _analytics(request: Request) -> Analytics:
    return request.app.state.analytics


def create_app(analytics: Optional[Analytics] = None) -> FastAPI:
    """Build the app. With ``analytics`` given, no data source is created at startup."""
    app = FastAPI(title=APP_TITLE, lifespan=_lifespan if analytics is None else None)
    if analytics is not None:
        app.state.analytics = analytics

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.include_router(health.router)

    @app.get("/api/leaderboard")
    async def leaderboard(
        request: Request,
        page: int = Query(1, ge=1),
        per_page: int = Query(20, ge=1, le=100),
    ) -> Dict[str, Any]:
        result = await _analytics(request).leaderboard.get_leaderboard(page, per_page)
        if result.error is not None:
            raise HTTPException(status_code=503, detail=f"Leaderboard unavailable: {result.error}")
        return {
            "data": [e.to_dict() for e in result.entries],
            "stats": result.stats.to_dict(),
            "totalPages": result.total_pages,
            "currentPage": result.current_page,
            "servedFromCache": result.served_from_cache,
            "stale": result.stale,
        }

    @app.get("/api/leaderboard/recent")
    async def recent_top(
        request: Request,
        days: int = Query(7, ge=1, le=365),
        limit: int = Query(5, ge=1, le=100),
    ) -> Dict[str, Any]:
        result = await _analytics(request).leaderboard.get_recent_top_performers(days, limit)
        if result.error is not None:
            raise HTTPException(status_code=503, detail=f"Leaderboard unavailable: {result.error}")
        return {"data": [e.to_dict() for e in result.entries]}

    @app.get("/api/leaderboard/users/{user_id}")
    async def user_ranking(request: Request, user_id: str) -> Dict[str, Any]:
        result = await _analytics(request).leaderboard.get_user_ranking(user_id)
        if result.ranking is None:
            status = 503 if isinstance(result.error, BaseException) else 404
            raise HTTPException(status_code=status, detail=str(result.error))
        ranking = result.ranking
        return {
            "userRank": ranking.user_rank,
            "userEntry": ranking.user_entry.to_dict(),
            "surrounding": [e.to_dict() for e in ranking.surrounding],
            "totalParticipants": ranking.total_participants,
        }

    @app.get("/api/dashboard/stats")
    async def dashboard_stats(request: Request) -> Dict[str, Any]:
        stats = await _analytics(request).dashboard.get_dashboard_stats()
        return stats.to_dict()

    @app.post("/api/cache/clear")
    async def clear_cache(
        request: Request,
        target: str = Query("all", pattern="^(all|leaderboard|dashboard)$"),
    ) -> Dict[str, Any]:
        analytics = _analytics(request)
        if target in ("all", "leaderboard"):
            analytics.leaderboard.clear_leaderboard_cache()
        if target in ("all", "dashboard"):
            analytics.dashboard.clear_dashboard_cache()
        return {"cleared": target}

    @app.get("/api/cache/status")
    async def cache_status(request: Request) -> Dict[str, Any]:
        return _analytics(request).status()

    return app


app = create_app()
