"""
Auto-Close Monitor
====================
Periodic sweeps over OPEN positions:
  - update_all_floating_pnl  mark every position to market, recompute equity
  - auto_close_positions     manual SL/TP -> risk-mode band -> 24h time limit
  - monitor_sltp             manual SL/TP only (high-frequency)
plus the user-initiated close paths (single position, close-all).

Every close runs in its own transaction. Locks are always taken portfolio
first, then position, the same order the execution engine uses, and the
position is re-checked to still be OPEN after the lock is held.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from core.alerts import TradeNotifier
from core.database import SessionLocal, StoredPortfolio, StoredPosition
from core.portfolio_store import PortfolioStore, calculate_pnl, mark_to_market
from core.trading_config import TradingConfig, get_config
from trading_interface.events.schemas import AutoCloseSummary, CloseAllSummary, CloseResult
from trading_interface.execution.errors import PositionNotFoundError, PriceUnavailableError
from trading_interface.market.context import MarketContextProvider

logger = logging.getLogger("AutoCloseMonitor")

CloseRule = Callable[[StoredPosition, StoredPortfolio, float, datetime], Optional[str]]


# ---------------------------------------------------------------------------
# Close rules: pure, first match wins
# ---------------------------------------------------------------------------
def manual_sltp_reason(position: StoredPosition, price: float) -> Optional[str]:
    if not position.stop_loss or not position.take_profit:
        return None
    if position.position_type == "LONG":
        if price <= position.stop_loss:
            return "Manual Stop Loss"
        if price >= position.take_profit:
            return "Manual Take Profit"
    else:
        if price >= position.stop_loss:
            return "Manual Stop Loss"
        if price <= position.take_profit:
            return "Manual Take Profit"
    return None


def risk_band_reason(pnl_percentage: float, risk_mode: str, bands: Dict[str, tuple]) -> Optional[str]:
    band = bands.get(risk_mode or "")
    if band is None:
        return None
    sl_pct, tp_pct = band
    if pnl_percentage <= sl_pct:
        return f"Auto Stop Loss {sl_pct:g}%"
    if pnl_percentage >= tp_pct:
        return f"Auto Take Profit {tp_pct:g}%"
    return None


def time_limit_reason(opened_at: Optional[datetime], now: datetime, max_hours: float) -> Optional[str]:
    if opened_at is None:
        return None
    if now - opened_at >= timedelta(hours=max_hours):
        return f"Time Limit {max_hours:g}h"
    return None


class AutoCloseMonitor:

    def __init__(
        self,
        market: MarketContextProvider,
        notifier: TradeNotifier,
        session_factory=SessionLocal,
        config: Optional[TradingConfig] = None,
    ):
        self.market = market
        self.notifier = notifier
        self.session_factory = session_factory
        self.config = config or get_config()

    def should_auto_close(self, position: StoredPosition, portfolio: StoredPortfolio,
                          price: float, now: datetime) -> Optional[str]:
        reason = manual_sltp_reason(position, price)
        if reason:
            return reason
        _, pnl_pct = calculate_pnl(
            position.position_type, position.entry_price, price, position.quantity, position.investment
        )
        reason = risk_band_reason(pnl_pct, portfolio.risk_mode, self.config.risk_mode_bands)
        if reason:
            return reason
        return time_limit_reason(position.opened_at, now, self.config.max_holding_hours)

    @staticmethod
    def should_close_sltp(position: StoredPosition, portfolio: StoredPortfolio,
                          price: float, now: datetime) -> Optional[str]:
        return manual_sltp_reason(position, price)

    # ── Sweeps ──────────────────────────────────────────────────────────────

    async def update_all_floating_pnl(self) -> int:
        """Marks every OPEN position to market and recomputes equity, one transaction per portfolio."""
        open_refs = self._open_position_refs()
        prices = await self._fetch_prices({symbol for _, _, symbol in open_refs})

        db = self.session_factory()
        try:
            user_ids = [r[0] for r in db.query(StoredPortfolio.user_id).order_by(StoredPortfolio.user_id).all()]
        finally:
            db.close()

        updated = failed = 0
        for user_id in user_ids:
            try:
                updated += self._mark_portfolio(user_id, prices)
            except Exception as e:
                failed += 1
                logger.error(f"Floating PnL update failed for user {user_id}: {e}")

        logger.info(f"Updated floating PnL for {updated}/{len(open_refs)} positions ({failed} portfolios failed)")
        return updated

    def _mark_portfolio(self, user_id: int, prices: Dict[str, Optional[float]]) -> int:
        db = self.session_factory()
        try:
            store = PortfolioStore(db)
            portfolio = store.load_portfolio(user_id)
            if portfolio is None:
                db.rollback()
                return 0
            updated = 0
            for position in store.open_positions(user_id, lock=True):
                price = prices.get(position.symbol)
                if price is None:
                    continue
                mark_to_market(position, price)
                updated += 1
            store.recompute_equity(portfolio)
            db.commit()
            return updated
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def auto_close_positions(self) -> AutoCloseSummary:
        return await self._sweep(self.should_auto_close, "auto-close")

    async def monitor_sltp(self) -> int:
        summary = await self._sweep(self.should_close_sltp, "SL/TP monitor")
        return summary.closed_count

    async def _sweep(self, rule: CloseRule, label: str) -> AutoCloseSummary:
        summary = AutoCloseSummary()
        open_refs = self._open_position_refs()
        prices = await self._fetch_prices({symbol for _, _, symbol in open_refs})

        for position_id, user_id, symbol in open_refs:
            price = prices.get(symbol)
            if price is None:
                summary.skipped += 1
                continue
            summary.processed += 1
            try:
                pnl = await self._close_if(position_id, user_id, price, rule)
            except Exception as e:
                summary.failed += 1
                logger.error(f"{label} failed for position {position_id}: {e}")
                continue
            if pnl is not None:
                summary.closed_count += 1
                summary.total_pnl += pnl

        if summary.closed_count:
            logger.info(f"{label}: closed {summary.closed_count} positions, total PnL ${summary.total_pnl:.2f}")
        return summary

    async def _close_if(self, position_id: int, user_id: int, price: float, rule: CloseRule) -> Optional[float]:
        """Re-checks the position under lock; closes it when the rule fires. Returns realized PnL or None."""
        db = self.session_factory()
        try:
            store = PortfolioStore(db)
            portfolio = store.load_portfolio(user_id)
            position = self._locked_open_position(db, position_id)
            if portfolio is None or position is None:
                db.rollback()
                return None

            reason = rule(position, portfolio, price, datetime.utcnow())
            if reason is None:
                mark_to_market(position, price)
                store.recompute_equity(portfolio)
                db.commit()
                return None

            pnl = store.close_position(portfolio, position, price, reason)
            event = TradeNotifier.position_closed(user_id, position.symbol, position.position_type, pnl, reason)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        await self.notifier.notify(event)
        return pnl

    # ── User-initiated closes ───────────────────────────────────────────────

    async def close_position_manually(self, position_id: int, user_id: Optional[int] = None,
                                      reason: str = "Manual Close") -> CloseResult:
        db = self.session_factory()
        try:
            ref = db.query(StoredPosition).filter(StoredPosition.id == position_id).first()
            if ref is None or ref.status != "OPEN" or (user_id is not None and ref.user_id != user_id):
                raise PositionNotFoundError("Position not found or already closed")

            close_price = await self.market.get_close_price(ref.symbol, ref.position_type)
            if close_price is None:
                raise PriceUnavailableError(f"Failed to get current price for {ref.symbol}")

            store = PortfolioStore(db)
            portfolio = store.load_portfolio(ref.user_id)
            position = self._locked_open_position(db, position_id)
            if portfolio is None or position is None:
                raise PositionNotFoundError("Position not found or already closed")

            pnl = store.close_position(portfolio, position, close_price, reason, manual=True)
            available = store.available_balance(portfolio)
            event = TradeNotifier.position_closed(
                position.user_id, position.symbol, position.position_type, pnl, reason
            )
            result = CloseResult(
                success=True,
                position_id=position.id,
                symbol=position.symbol,
                pnl=pnl,
                close_price=close_price,
                available_balance=available,
                message=f"Position closed successfully. PNL: ${pnl:,.2f}",
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Manual close failed for position {position_id}: {e}")
            return CloseResult(success=False, position_id=position_id,
                               message=f"Failed to close position: {e}")
        finally:
            db.close()

        await self.notifier.notify(event)
        return result

    async def close_all_positions(self, user_id: int, reason: str = "Emergency Close All") -> CloseAllSummary:
        db = self.session_factory()
        try:
            ids = [
                r[0] for r in db.query(StoredPosition.id)
                .filter(StoredPosition.user_id == user_id, StoredPosition.status == "OPEN")
                .order_by(StoredPosition.id)
                .all()
            ]
        finally:
            db.close()

        results: List[CloseResult] = []
        for position_id in ids:
            results.append(await self.close_position_manually(position_id, user_id, reason))

        closed = [r for r in results if r.success]
        total_pnl = sum(r.pnl for r in closed)
        logger.info(f"Close-all for user {user_id}: {len(closed)}/{len(ids)} closed, PnL ${total_pnl:.2f}")
        return CloseAllSummary(
            success=True,
            closed_count=len(closed),
            total_pnl=total_pnl,
            results=results,
            message=f"Closed {len(closed)} positions. Total PNL: ${total_pnl:,.2f}",
        )

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _open_position_refs(self):
        db = self.session_factory()
        try:
            return [
                (r.id, r.user_id, r.symbol) for r in db.query(
                    StoredPosition.id, StoredPosition.user_id, StoredPosition.symbol
                ).filter(StoredPosition.status == "OPEN").order_by(StoredPosition.id).all()
            ]
        finally:
            db.close()

    async def _fetch_prices(self, symbols) -> Dict[str, Optional[float]]:
        prices = {}
        for symbol in sorted(symbols):
            prices[symbol] = await self.market.get_current_price(symbol)
        return prices

    @staticmethod
    def _locked_open_position(db, position_id: int) -> Optional[StoredPosition]:
        return (
            db.query(StoredPosition)
            .filter(StoredPosition.id == position_id, StoredPosition.status == "OPEN")
            .with_for_update()
            .first()
        )
