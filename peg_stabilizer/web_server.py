"""
FastAPI web server for the peg stabilizer bot.

Exposes the PegBotService operations as JSON endpoints under /api/bot
plus Prometheus metrics at /metrics.
"""

import asyncio
import contextlib
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .exceptions import (
    ExecutionFailure,
    PegStabilizerError,
    PersistenceError,
    SafetyViolation,
    UpstreamUnavailable,
    ValidationError,
)
from .models import TradeRequest
from .service import PegBotService, PegKeeper
from .utils import get_logger
from .version import __version__

logger = get_logger(__name__)


class ReasonBody(BaseModel):
    reason: Optional[str] = None
    actor: Optional[str] = None


def error_status(error: PegStabilizerError) -> int:
    """HTTP status for a service error."""
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, SafetyViolation):
        return 429 if error.reason == "daily limit exceeded" else 403
    if isinstance(error, UpstreamUnavailable):
        return 503
    if isinstance(error, ExecutionFailure):
        return 504
    if isinstance(error, PersistenceError):
        return 500
    return 500


def _error_body(error: PegStabilizerError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": str(error), "details": error.details}
    if isinstance(error, SafetyViolation):
        body["reason"] = error.reason
    return body


def _actor(body: Optional[ReasonBody]) -> str:
    return (body.actor if body and body.actor else None) or "api"


def create_router(service: PegBotService) -> APIRouter:
    router = APIRouter(prefix="/api/bot")

    # === Prices ===

    @router.get("/prices/current")
    async def get_current_prices():
        """Current token, base and reference prices"""
        snapshot = await service.get_current_prices()
        return snapshot.to_dict()

    @router.get("/prices/deviation")
    async def get_deviation(target: Optional[float] = None):
        """Signed deviation from the peg (or from ``target``)"""
        deviation = await service.get_deviation(target)
        return deviation.to_dict()

    @router.get("/prices/history")
    async def get_price_history(hours: float = 24, limit: int = 100):
        """Recorded oracle polls, newest first"""
        points = await service.get_price_history(hours=hours, limit=limit)
        return {"prices": [p.to_dict() for p in points], "count": len(points)}

    @router.get("/prices/statistics")
    async def get_price_statistics(hours: float = 24):
        stats = await service.get_price_statistics(hours)
        return stats.to_dict()

    @router.get("/liquidity")
    async def get_liquidity():
        depth = await service.get_liquidity_depth()
        return depth.to_dict()

    # === Trading ===

    @router.post("/trade/execute")
    async def execute_trade(payload: Dict[str, Any] = Body(...)):
        """Submit one corrective trade; FAILED trades are returned, not raised"""
        outcome = await service.orchestrator.submit(TradeRequest.from_dict(payload))
        return outcome.to_dict()

    @router.post("/trade/estimate")
    async def estimate_trade(payload: Dict[str, Any] = Body(...)):
        quote = await service.estimate_trade(payload.get("amount"), payload.get("action"))
        return quote.to_dict()

    @router.get("/trade/history")
    async def get_trade_history(
        status: Optional[str] = None,
        hours: Optional[float] = None,
        limit: int = 50,
    ):
        trades = await service.get_trade_history(status=status, hours=hours, limit=limit)
        return {"trades": [t.to_dict() for t in trades], "count": len(trades)}

    @router.get("/trade/statistics")
    async def get_trade_statistics(hours: float = 24):
        stats = await service.get_trade_statistics(hours)
        return stats.to_dict()

    @router.get("/trade/{trade_id}")
    async def get_trade(trade_id: str):
        record = await service.get_trade(trade_id)
        if record is None:
            return JSONResponse(
                status_code=404, content={"error": f"Trade {trade_id} not found"}
            )
        return record.to_dict()

    # === Wallet ===

    @router.get("/balances")
    async def get_balances():
        balances = await service.get_balances()
        return balances.to_dict()

    @router.get("/portfolio/status")
    async def get_portfolio_status():
        return await service.get_portfolio_status()

    # === Configuration ===

    @router.get("/config")
    async def get_config():
        return service.get_config().model_dump(mode="json")

    @router.put("/config")
    async def update_config(patch: Dict[str, Any] = Body(...)):
        """Partial update; unknown or out-of-range fields are rejected"""
        config = await service.update_config(patch)
        return config.model_dump(mode="json")

    @router.post("/config/enable")
    async def enable_bot(body: Optional[ReasonBody] = None):
        config = await service.enable(body.reason if body else None, _actor(body))
        return {"status": "enabled", "config": config.model_dump(mode="json")}

    @router.post("/config/disable")
    async def disable_bot(body: Optional[ReasonBody] = None):
        config = await service.disable(body.reason if body else None, _actor(body))
        return {"status": "disabled", "config": config.model_dump(mode="json")}

    @router.post("/config/reset-statistics")
    async def reset_statistics(body: Optional[ReasonBody] = None):
        config = await service.reset_statistics(_actor(body))
        return {"status": "reset", "statistics": config.statistics.model_dump()}

    @router.post("/emergency/pause")
    async def emergency_pause(body: Optional[ReasonBody] = None):
        config = await service.emergency_pause(body.reason if body else None, _actor(body))
        return {
            "status": "paused",
            "pause_reason": config.pause_reason,
            "paused_at": config.paused_at,
        }

    # === Composite reads ===

    @router.get("/safety/status")
    async def get_safety_status():
        status = await service.get_safety_status()
        return status.to_dict()

    @router.get("/health")
    async def health_check():
        """200 when every check passes, 503 otherwise"""
        report = await service.get_health()
        return JSONResponse(
            status_code=200 if report.healthy else 503, content=report.to_dict()
        )

    return router


def create_app(
    service: PegBotService,
    keeper: Optional[PegKeeper] = None,
) -> FastAPI:
    """
    Build the application for one bot service.

    When ``keeper`` is given its monitoring loop runs for the lifetime of
    the application.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting peg stabilizer server for bot {service.bot_id}")
        task = None
        if keeper is not None:
            task = asyncio.create_task(keeper.run())
        try:
            yield
        finally:
            logger.info("Shutting down peg stabilizer server")
            if task is not None:
                keeper.stop()
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await service.close()

    app = FastAPI(title="Peg Stabilizer", version=__version__, lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PegStabilizerError)
    async def service_error_handler(request: Request, exc: PegStabilizerError):
        status = error_status(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
        return JSONResponse(status_code=status, content=_error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def request_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid request",
                "details": {"errors": jsonable_encoder(exc.errors())},
            },
        )

    @app.get("/metrics")
    async def metrics():
        return Response(content=service.metrics.render(), media_type=service.metrics.content_type)

    app.include_router(create_router(service))
    return app
