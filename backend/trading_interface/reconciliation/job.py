import logging
from typing import Optional

from sqlalchemy import func

from core.database import SessionLocal, StoredTradeHistory
from core.portfolio_store import PortfolioStore, mark_to_market
from trading_interface.events.schemas import RepairResult
from trading_interface.market.context import MarketContextProvider

logger = logging.getLogger("PortfolioRepair")

DRIFT_TOLERANCE = 0.01


class PortfolioRepairWorker:
    """
    CRITICAL: The trade history is the absolute source of truth.
    If a partial failure left balance/equity inconsistent, this worker
    recomputes them from the ledger and overwrites the portfolio record:

        balance = initial_balance + Σ realized pnl (history)
        equity  = balance + Σ floating pnl (OPEN positions)

    Both are floored at 0. Mismatches are repaired, logged as warnings and
    never surfaced to the caller as failures.
    """

    def __init__(self, market: Optional[MarketContextProvider] = None, session_factory=SessionLocal):
        self.market = market
        self.session_factory = session_factory

    async def repair_portfolio_data(self, user_id: int, refresh_prices: bool = False) -> RepairResult:
        logger.info(f"Beginning portfolio repair for user {user_id}...")

        prices = {}
        if refresh_prices and self.market is not None:
            prices = await self._current_prices(user_id)

        db = self.session_factory()
        try:
            store = PortfolioStore(db)
            portfolio = store.load_portfolio(user_id)
            if portfolio is None:
                return RepairResult(success=False, message="Portfolio not found")

            for position in store.open_positions(user_id, lock=True):
                price = prices.get(position.symbol)
                if price is not None:
                    mark_to_market(position, price)

            realized = db.query(func.coalesce(func.sum(StoredTradeHistory.pnl), 0.0)).filter(
                StoredTradeHistory.user_id == user_id,
                StoredTradeHistory.pnl.isnot(None),
            ).scalar()
            realized = float(realized or 0.0)

            old_balance, old_equity = portfolio.balance or 0.0, portfolio.equity or 0.0
            new_balance = max(0.0, (portfolio.initial_balance or 0.0) + realized)

            portfolio.balance = new_balance
            portfolio.realized_pnl = realized
            store.recompute_equity(portfolio)
            portfolio.equity = max(0.0, portfolio.equity)

            if (abs(old_balance - portfolio.balance) > DRIFT_TOLERANCE
                    or abs(old_equity - portfolio.equity) > DRIFT_TOLERANCE):
                logger.warning(
                    f"STATE MISMATCH! user {user_id}: balance ${old_balance:.2f} -> ${portfolio.balance:.2f}, "
                    f"equity ${old_equity:.2f} -> ${portfolio.equity:.2f}. Overwriting portfolio."
                )

            result = RepairResult(
                success=True,
                message="Portfolio data repaired successfully",
                balance=portfolio.balance,
                equity=portfolio.equity,
                realized_pnl=portfolio.realized_pnl,
                floating_pnl=portfolio.floating_pnl,
            )
            db.commit()
            logger.info(f"Repair completed for user {user_id}: balance=${result.balance:.2f} equity=${result.equity:.2f}")
            return result

        except Exception as e:
            db.rollback()
            logger.error(f"Repair failed for user {user_id}: {e}")
            return RepairResult(success=False, message=f"Repair failed: {e}")
        finally:
            db.close()

    async def _current_prices(self, user_id: int):
        db = self.session_factory()
        try:
            symbols = sorted({p.symbol for p in PortfolioStore(db).open_positions(user_id)})
        finally:
            db.close()
        prices = {}
        for symbol in symbols:
            price = await self.market.get_current_price(symbol)
            if price is not None:
                prices[symbol] = price
        return prices
