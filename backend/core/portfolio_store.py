"""
Portfolio Store
================
Balance / equity bookkeeping against the user_portfolios table.
Every method operates on the caller's Session so that it joins the caller's
transaction; the caller owns commit / rollback.

Bookkeeping rules:
  - balance moves ONLY by realized PnL (add_realized_pnl)
  - opening a position never debits balance; it consumes available balance
  - equity = balance + sum(floating_pnl of OPEN positions)
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.database import StoredPortfolio, StoredPosition, StoredTradeHistory
from core.portfolio_state import PortfolioState, PositionType, RiskMode

logger = logging.getLogger("PortfolioStore")


def calculate_pnl(position_type: str, entry_price: float, price: float,
                  quantity: float, investment: float) -> Tuple[float, float]:
    """Returns (pnl, pnl_percentage of investment)."""
    if position_type == PositionType.LONG.value:
        pnl = (price - entry_price) * quantity
    else:
        pnl = (entry_price - price) * quantity
    pct = pnl / investment * 100 if investment else 0.0
    return pnl, pct


def mark_to_market(position: StoredPosition, price: float) -> float:
    pnl, pct = calculate_pnl(
        position.position_type, position.entry_price, price, position.quantity, position.investment
    )
    position.current_price = price
    position.floating_pnl = pnl
    position.pnl_percentage = pct
    return pnl


class PortfolioStore:

    def __init__(self, db: Session):
        self.db = db

    def load_portfolio(self, user_id: int, lock: bool = True) -> Optional[StoredPortfolio]:
        """Loads the user's portfolio, row-locked for the rest of the transaction."""
        query = self.db.query(StoredPortfolio).filter(StoredPortfolio.user_id == user_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    def enabled_user_ids(self) -> List[int]:
        rows = (
            self.db.query(StoredPortfolio.user_id)
            .filter(StoredPortfolio.ai_trade_enabled == True)  # noqa: E712
            .filter(StoredPortfolio.equity > 0)
            .order_by(StoredPortfolio.user_id)
            .all()
        )
        return [r[0] for r in rows]

    def open_positions(self, user_id: int, lock: bool = False) -> List[StoredPosition]:
        self.db.flush()
        query = (
            self.db.query(StoredPosition)
            .filter(StoredPosition.user_id == user_id)
            .filter(StoredPosition.status == "OPEN")
            .order_by(StoredPosition.id)
        )
        if lock:
            query = query.with_for_update()
        return query.all()

    def committed_investment(self, user_id: int) -> float:
        self.db.flush()
        total = (
            self.db.query(func.coalesce(func.sum(StoredPosition.investment), 0.0))
            .filter(StoredPosition.user_id == user_id)
            .filter(StoredPosition.status == "OPEN")
            .scalar()
        )
        return float(total or 0.0)

    def available_balance(self, portfolio: StoredPortfolio) -> float:
        return max(0.0, portfolio.balance - self.committed_investment(portfolio.user_id))

    def can_open_position(self, portfolio: StoredPortfolio, amount: float) -> bool:
        return amount > 0 and amount <= self.available_balance(portfolio)

    def snapshot(self, portfolio: StoredPortfolio) -> PortfolioState:
        return PortfolioState(
            user_id=portfolio.user_id,
            balance=portfolio.balance,
            equity=portfolio.equity,
            available_balance=self.available_balance(portfolio),
            risk_value=portfolio.risk_value or 0.0,
            risk_mode=RiskMode(portfolio.risk_mode or "MODERATE"),
        )

    def calculate_risk_amount(self, portfolio: StoredPortfolio) -> float:
        """Base risk amount: risk_value% of the available balance."""
        return self.snapshot(portfolio).base_risk_amount

    def add_realized_pnl(self, portfolio: StoredPortfolio, amount: float) -> None:
        old_balance = portfolio.balance
        portfolio.balance = (portfolio.balance or 0.0) + amount
        portfolio.realized_pnl = (portfolio.realized_pnl or 0.0) + amount
        logger.info(
            f"Realized PnL applied for user {portfolio.user_id}: "
            f"${old_balance:.2f} -> ${portfolio.balance:.2f} ({amount:+.2f})"
        )

    def close_position(self, portfolio: StoredPortfolio, position: StoredPosition,
                       price: float, reason: str, manual: bool = False) -> float:
        """
        Settles an OPEN position at `price`: marks it CLOSED, credits realized PnL
        to the balance and appends the close row to the trade history.
        Caller holds the portfolio lock and commits.
        """
        pnl = mark_to_market(position, price)
        position.status = "CLOSED"
        position.exit_price = price
        position.realized_pnl = pnl
        position.closed_at = datetime.utcnow()
        position.close_reason = reason

        self.add_realized_pnl(portfolio, pnl)

        self.db.add(StoredTradeHistory(
            user_id=position.user_id,
            decision_id=position.decision_id,
            position_id=position.id,
            symbol=position.symbol,
            action="SELL",
            position_type=position.position_type,
            quantity=position.quantity,
            price=price,
            amount=position.investment + pnl,
            pnl=pnl,
            pnl_percentage=position.pnl_percentage,
            notes=f"{'MANUAL CLOSE' if manual else 'CLOSE'}: {reason}",
        ))
        self.recompute_equity(portfolio)

        logger.info(
            f"CLOSE: {position.symbol} {position.position_type} - PNL: ${pnl:.2f} - Reason: {reason} "
            f"- New Available Balance: ${self.available_balance(portfolio):.2f}"
        )
        return pnl

    def recompute_equity(self, portfolio: StoredPortfolio) -> float:
        self.db.flush()
        floating = (
            self.db.query(func.coalesce(func.sum(StoredPosition.floating_pnl), 0.0))
            .filter(StoredPosition.user_id == portfolio.user_id)
            .filter(StoredPosition.status == "OPEN")
            .scalar()
        )
        portfolio.floating_pnl = float(floating or 0.0)
        portfolio.equity = portfolio.balance + portfolio.floating_pnl
        return portfolio.equity
