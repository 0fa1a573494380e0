import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from config import config
from monitoring.logging_utils import log_level, setup_logging


watch_system = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global watch_system
    from main import AccountWatchSystem
    watch_system = AccountWatchSystem()
    task = asyncio.create_task(watch_system.run())
    try:
        yield
    finally:
        if watch_system:
            watch_system.request_stop()
            await watch_system.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="Account Watch API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api['cors_origins'],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {
        "service": "Account Watch",
        "version": "1.0.0",
        "status": "running" if watch_system and watch_system.running else "stopped"
    }


@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")


@app.get("/health")
async def health():
    if not watch_system:
        return {"status": "starting", "timestamp": _now(), "system_running": False}
    stats = watch_system.statistics()
    exhausted = [conn.id for conn in watch_system.pool if conn.exhausted]
    return {
        "status": "degraded" if exhausted else "healthy",
        "timestamp": _now(),
        "system_running": watch_system.running,
        "active_connections": stats.active_connections,
        "total_connections": stats.total_connections,
        "exhausted_connections": exhausted,
    }


@app.get("/status")
async def status():
    if not watch_system:
        return {"error": "Account watcher not initialized"}
    payload = watch_system.detailed_status()
    payload["timestamp"] = _now()
    return payload


@app.get("/prices")
async def prices():
    if not watch_system:
        return {"error": "Account watcher not initialized"}
    cache = watch_system.price_cache
    snapshot = cache.snapshot()
    return {
        "prices": snapshot,
        "count": len(snapshot),
        "aliases": dict(cache.aliases),
        "stable_asset": cache.stable_asset,
        "applied_updates": cache.applied_updates,
        "discarded_updates": cache.discarded_updates,
        "timestamp": _now()
    }


if __name__ == "__main__":
    import uvicorn
    setup_logging(log_level(config.monitoring.get('log_level')))
    uvicorn.run(
        app,
        host=config.api['host'],
        port=config.api['port'],
        log_level="info"
    )
