import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Query
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from config import config


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(engine=None, run_engine: bool = False) -> FastAPI:
    """Read-only status API over a running engine.

    With ``run_engine`` the app's lifespan also starts and stops the engine,
    so ``uvicorn`` can host the whole process.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if run_engine and engine is not None:
            task = asyncio.create_task(engine.start())
        try:
            yield
        finally:
            if task is not None:
                await engine.stop()
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    app = FastAPI(title="Volume Anomaly Engine API", version="1.0.0", lifespan=lifespan)

    api_cfg = config.get('api') or {}
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(api_cfg.get('cors_origins') or ["*"]),
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        return {
            "service": "Volume Anomaly Engine",
            "version": "1.0.0",
            "status": "running" if engine is not None and engine.running else "stopped",
        }

    @app.get("/favicon.ico")
    async def favicon():
        return Response(content=b"", media_type="image/x-icon")

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": _now_iso(),
            "system_running": engine.running if engine is not None else False,
        }

    @app.get("/watchlist")
    async def get_watchlist():
        if engine is None:
            return {"error": "Engine not initialized"}
        pending = engine.watchlist.snapshot()
        return {
            "pending": pending,
            "count": len(pending),
            "summary": engine.status()["watchlist_summary"],
            "timestamp": _now_iso(),
        }

    @app.get("/positions")
    async def get_positions():
        if engine is None:
            return {"error": "Engine not initialized"}
        positions = engine.positions.snapshot()
        return {"positions": positions, "count": len(positions), "timestamp": _now_iso()}

    @app.get("/statistics")
    async def get_statistics():
        if engine is None:
            return {"error": "Engine not initialized"}
        stats = engine.statistics.compute(engine.positions.ledger, engine.watchlist.leads)
        return {"statistics": stats.to_dict(), "timestamp": _now_iso()}

    @app.get("/history")
    async def get_history(limit: int = Query(50, ge=1, le=1000)):
        if engine is None:
            return {"error": "Engine not initialized"}
        trades = [trade.to_dict() for trade in engine.positions.ledger[-limit:]]
        return {"trades": trades, "count": len(trades), "timestamp": _now_iso()}

    return app
