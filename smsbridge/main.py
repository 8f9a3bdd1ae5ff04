"""
SMS Bridge application
- Platform app lifecycle, step services (action / decision / feeder)
- Gateway webhooks (DLR, replies, link hits)
- Background send worker and decision deadline sweeper
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from smsbridge import __version__
from smsbridge.context import AppContext
from smsbridge.decision_evaluator import DeadlineSweeper
from smsbridge.rate_limit import RateLimiter
from smsbridge.routes import action, app as app_routes, decision, feeder, webhooks
from smsbridge.routes.common import install_error_handlers
from smsbridge.runtime import configure_logging, get_logger, iso_now
from smsbridge.send_worker import PeriodicWorker, SendWorker

logger = get_logger("main")


def build_workers(ctx: AppContext) -> List[PeriodicWorker]:
    return [SendWorker(ctx), DeadlineSweeper(ctx.evaluator)]


def create_app(ctx: Optional[AppContext] = None, limiter: Optional[RateLimiter] = None) -> FastAPI:
    configure_logging()
    ctx = ctx or AppContext()
    limiter = limiter or RateLimiter.from_settings(ctx.config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        workers: List[PeriodicWorker] = []
        tasks: List[asyncio.Task] = []
        if ctx.config.WORKERS_ENABLED:
            workers = build_workers(ctx)
            app.state.workers = workers
            tasks = [asyncio.create_task(w.run(), name=w.name) for w in workers]
            logger.info("Started workers: %s", ", ".join(w.name for w in workers))
        else:
            logger.info("Workers disabled (WORKERS_ENABLED=0)")
        try:
            yield
        finally:
            await asyncio.gather(*(w.stop() for w in workers))
            for task in tasks:
                if not task.done():
                    task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for worker, result in zip(workers, results):
                if isinstance(result, Exception):
                    logger.error("%s exited with error: %s", worker.name, result)

    app = FastAPI(title="SMS Bridge", version=__version__, lifespan=lifespan)
    app.state.ctx = ctx
    app.state.limiter = limiter
    app.state.workers = []

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        client = request.client.host if request.client else "unknown"
        if not await limiter.check(client):
            logger.warning("Rate limit exceeded for %s on %s", client, request.url.path)
            return JSONResponse(
                status_code=429,
                content={"ok": False, "error": "rate_limited", "message": "Too many requests, please try again later."},
            )
        return await call_next(request)

    install_error_handlers(app)
    app.include_router(app_routes.router)  # → /eloqua/app
    app.include_router(action.router)  # → /eloqua/action
    app.include_router(decision.router)  # → /eloqua/decision
    app.include_router(feeder.router)  # → /eloqua/feeder
    app.include_router(webhooks.router)  # → /webhooks

    @app.get("/health")
    async def health():
        return {"ok": True, "timestamp": iso_now(), "version": __version__}

    return app


app = create_app()
