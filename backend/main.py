"""
FastAPI HTTP surface for the CANSLIM Screener.
Thin JSON adapter over AppContext; all logic lives in the core modules.

Run with: uvicorn backend.main:app
"""

import sys
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import date
from typing import Literal, Optional
import logging

from fastapi import FastAPI, BackgroundTasks, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, field_validator

# Allow running from the backend directory
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.config import settings
from backend.context import AppContext
from errors import (
    BacktestDataError, CanslimError, ConfigurationError, NotFoundError, ScanInProgressError,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ScanInProgressError: 409,
    ConfigurationError: 400,
    NotFoundError: 404,
    BacktestDataError: 422,
}


# ============== Request Models ==============

class ScanRequest(BaseModel):
    mode: Literal["daily", "intraday"] = "daily"


class BacktestRequest(BaseModel):
    date_from: date
    date_to: date
    score_cutoff: Optional[float] = Field(None, ge=0, le=100)
    max_positions: Optional[int] = Field(None, gt=0, le=100)
    risk_percent: Optional[float] = Field(None, gt=0, le=100)
    stop_percent: Optional[float] = Field(None, gt=0, le=100)
    initial_capital: Optional[float] = Field(None, gt=0)
    use_market_gate: Optional[bool] = None
    profit_target_percent: Optional[float] = Field(None, gt=0)
    fixed_profit_target_percent: Optional[float] = Field(15.0, gt=0)
    max_holding_days: Optional[int] = Field(None, gt=0)

    @field_validator('date_to')
    @classmethod
    def validate_range(cls, v: date, info) -> date:
        date_from = info.data.get('date_from')
        if date_from and v < date_from:
            raise ValueError('date_to must be on or after date_from')
        return v


class UniverseRefreshRequest(BaseModel):
    tag: Optional[str] = Field(None, max_length=20)


# ============== App Setup ==============

def get_context(request: Request) -> AppContext:
    """Dependency for FastAPI endpoints"""
    return request.app.state.context


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """Build the app; without a context one is created from settings at startup"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.APP_NAME} API...")
        if getattr(app.state, "context", None) is None:
            app.state.context = AppContext.from_settings(settings)
        yield
        logger.info("Shutting down...")

    app = FastAPI(title=settings.APP_NAME, version=settings.VERSION, lifespan=lifespan)
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CanslimError)
    async def canslim_error_handler(request: Request, exc: CanslimError):
        status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 502)
        if status >= 500:
            logger.error(f"{request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc), "reason": exc.reason_code})

    # ============== Health ==============

    @app.get("/health")
    def health_check(ctx: AppContext = Depends(get_context)):
        """Health check endpoint"""
        try:
            runs = ctx.list_runs(limit=1)
            db_status = "healthy"
        except Exception as e:
            runs = []
            db_status = f"unhealthy: {str(e)}"

        return {
            "status": "healthy" if db_status == "healthy" else "degraded",
            "database": db_status,
            "scanner": ctx.scan_status()["state"],
            "last_run_id": runs[0]["id"] if runs else None,
            "version": settings.VERSION,
        }

    # ============== Scans ==============

    @app.post("/api/scan", status_code=202)
    def start_scan(background_tasks: BackgroundTasks, request: Optional[ScanRequest] = None,
                   ctx: AppContext = Depends(get_context)):
        """Start a scan; batches run in the background"""
        session = ctx.begin_scan(request.mode if request else "daily")
        if session.gated:
            return {"run_id": session.run_id, "status": "gated", "gate_reason": session.gate.reason}

        background_tasks.add_task(ctx.execute_scan, session)
        return {
            "run_id": session.run_id,
            "status": "started",
            "gate_reason": session.gate.reason,
            "universe_size": len(session.universe),
            "batches": session.batches_total,
        }

    @app.get("/api/scan/status")
    def scan_status(ctx: AppContext = Depends(get_context)):
        return ctx.scan_status()

    @app.get("/api/scan/live")
    def live_results(ctx: AppContext = Depends(get_context)):
        accumulator = ctx.get_current_accumulator()
        return {
            "run_id": accumulator.run_id,
            "count": len(accumulator),
            "results": [r.to_record() for r in accumulator.results],
        }

    @app.get("/api/scans")
    def list_scans(limit: int = Query(50, ge=1, le=500), ctx: AppContext = Depends(get_context)):
        return ctx.list_runs(limit)

    @app.get("/api/scans/{run_id}/results")
    def scan_results(run_id: int, qualified_only: bool = False, ctx: AppContext = Depends(get_context)):
        results = ctx.get_results(run_id)
        if qualified_only:
            results = [r for r in results if r.qualified]
        return {"run_id": run_id, "count": len(results), "results": [r.to_record() for r in results]}

    @app.get("/api/scans/{run_id}/export")
    def export_scan(run_id: int, format: str = Query("csv"), ctx: AppContext = Depends(get_context)):
        content = ctx.export_results(run_id, format)
        media_type = "text/csv" if format == "csv" else "application/json"
        return Response(
            content=content,
            media_type=media_type,
            headers={"Content-Disposition": f'attachment; filename="scan_{run_id}.{format}"'},
        )

    # ============== Backtests ==============

    @app.post("/api/backtest")
    def run_backtest(request: BacktestRequest, ctx: AppContext = Depends(get_context)):
        values = request.model_dump(exclude_unset=True)
        values.setdefault("date_from", request.date_from)
        values.setdefault("date_to", request.date_to)
        report = ctx.run_backtest(values)
        return report.to_dict()

    @app.get("/api/backtests")
    def list_backtests(limit: int = Query(50, ge=1, le=500), ctx: AppContext = Depends(get_context)):
        return ctx.list_backtests(limit)

    # ============== Universe / provider / settings ==============

    @app.post("/api/universe/refresh")
    def refresh_universe(request: Optional[UniverseRefreshRequest] = None,
                         ctx: AppContext = Depends(get_context)):
        count = ctx.refresh_universe(request.tag if request else None)
        return {"tag": ctx.config.get("universe.tag"), "symbols": count}

    @app.get("/api/provider/test")
    def test_provider(ctx: AppContext = Depends(get_context)):
        return {"provider": ctx.provider.name, "connected": ctx.test_provider()}

    @app.get("/api/settings")
    def get_settings(ctx: AppContext = Depends(get_context)):
        return ctx.settings()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("backend.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
