"""
AI Decision Execution Engine: FastAPI Backend
================================================
Thin HTTP surface over the execution engine, the auto-close monitor and the
portfolio repair worker. All trading logic lives in core/ and
trading_interface/; endpoints only translate requests and results.
  - Decisions: execute one decision, execute all pending decisions
  - Positions: floating PnL refresh, auto-close sweep, SL/TP sweep, manual close
  - Users: close-all, repair, portfolio snapshot
  - Alerts feed and /health for K8s liveness/readiness probes
"""

import asyncio
import logging
import os
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from core.alerts import build_notifier, get_all_alerts, get_unread_count, mark_read
from core.database import SessionLocal, StoredPosition, init_db
from core.portfolio_store import PortfolioStore
from core.scheduler import EngineScheduler
from core.trading_config import get_config
from trading_interface.execution.agent import ExecutionEngine
from trading_interface.execution.monitor import AutoCloseMonitor
from trading_interface.market.context import MarketContextProvider, build_price_feed
from trading_interface.reconciliation.job import PortfolioRepairWorker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("API")

# ---------------------------------------------------------------------------
# App & Middleware
# ---------------------------------------------------------------------------
app = FastAPI(title="AI Decision Execution Engine API", version="1.0.0")

_cors_origins = os.getenv(
    "CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Module-level singletons
# ---------------------------------------------------------------------------
MARKET   = MarketContextProvider(build_price_feed())
NOTIFIER = build_notifier()
ENGINE   = ExecutionEngine(MARKET, NOTIFIER)
MONITOR  = AutoCloseMonitor(MARKET, NOTIFIER)
REPAIR   = PortfolioRepairWorker(MARKET)


class CloseRequest(BaseModel):
    user_id: Optional[int] = None
    reason: str = "Manual Close"


class CloseAllRequest(BaseModel):
    reason: str = "Emergency Close All"


# ---------------------------------------------------------------------------
# Startup: init DB, launch scheduler
# ---------------------------------------------------------------------------
@app.on_event("startup")
async def startup_event():
    init_db()

    cfg = get_config()
    if not cfg.scheduler_enabled:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")
        return

    scheduler = EngineScheduler(ENGINE, MONITOR)
    asyncio.create_task(scheduler.run())
    logger.info(
        f"Scheduler running: decisions every {cfg.decision_scan_interval}s, "
        f"SL/TP every {cfg.sltp_monitor_interval}s, auto-close every {cfg.auto_close_interval}s"
    )


@app.get("/health")
def health_check():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------
@app.post("/api/decisions/{decision_id}/execute")
async def execute_decision(decision_id: int):
    summary = await ENGINE.execute_decision(decision_id)
    if summary.status == "NOT_FOUND":
        raise HTTPException(status_code=404, detail=f"Decision {decision_id} not found")
    return summary


@app.post("/api/decisions/execute-pending")
async def execute_pending():
    summaries = await ENGINE.execute_pending_decisions()
    return {"processed": len(summaries), "decisions": summaries}


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------
@app.post("/api/positions/update-pnl")
async def update_pnl():
    updated = await MONITOR.update_all_floating_pnl()
    return {"updated": updated}


@app.post("/api/positions/auto-close")
async def auto_close():
    return await MONITOR.auto_close_positions()


@app.post("/api/positions/monitor-sltp")
async def monitor_sltp():
    closed = await MONITOR.monitor_sltp()
    return {"closed_count": closed}


@app.post("/api/positions/{position_id}/close")
async def close_position(position_id: int, payload: Optional[CloseRequest] = None):
    payload = payload or CloseRequest()
    result = await MONITOR.close_position_manually(position_id, payload.user_id, payload.reason)
    if not result.success:
        raise HTTPException(status_code=400, detail=result.message)
    return result


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
@app.post("/api/users/{user_id}/close-all")
async def close_all(user_id: int, payload: Optional[CloseAllRequest] = None):
    payload = payload or CloseAllRequest()
    return await MONITOR.close_all_positions(user_id, payload.reason)


@app.post("/api/users/{user_id}/repair")
async def repair(user_id: int, refresh_prices: bool = False):
    result = await REPAIR.repair_portfolio_data(user_id, refresh_prices=refresh_prices)
    if not result.success:
        raise HTTPException(status_code=404, detail=result.message)
    return result


@app.get("/api/users/{user_id}/portfolio")
def get_portfolio(user_id: int):
    db = SessionLocal()
    try:
        store = PortfolioStore(db)
        portfolio = store.load_portfolio(user_id, lock=False)
        if portfolio is None:
            raise HTTPException(status_code=404, detail="Portfolio not found")
        positions = (
            db.query(StoredPosition)
            .filter(StoredPosition.user_id == user_id, StoredPosition.status == "OPEN")
            .order_by(StoredPosition.opened_at.desc())
            .all()
        )
        return {
            "user_id":           portfolio.user_id,
            "balance":           portfolio.balance,
            "equity":            portfolio.equity,
            "available_balance": store.available_balance(portfolio),
            "realized_pnl":      portfolio.realized_pnl,
            "floating_pnl":      portfolio.floating_pnl,
            "risk_mode":         portfolio.risk_mode,
            "risk_value":        portfolio.risk_value,
            "ai_trade_enabled":  portfolio.ai_trade_enabled,
            "positions": [
                {"id": p.id, "symbol": p.symbol, "type": p.position_type,
                 "quantity": p.quantity, "entry": p.entry_price, "current": p.current_price,
                 "investment": p.investment, "floating_pnl": p.floating_pnl,
                 "pnl_percentage": p.pnl_percentage, "stop_loss": p.stop_loss,
                 "take_profit": p.take_profit, "opened_at": p.opened_at.isoformat() if p.opened_at else None}
                for p in positions
            ],
        }
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------
@app.get("/api/alerts")
def get_alerts(unread_only: bool = False, user_id: Optional[int] = None):
    return {
        "unread": get_unread_count(),
        "alerts": [a.to_dict() for a in get_all_alerts(unread_only=unread_only, user_id=user_id)],
    }


@app.post("/api/alerts/{alert_id}/read")
def read_alert(alert_id: str):
    mark_read(alert_id)
    return {"status": "ok"}
