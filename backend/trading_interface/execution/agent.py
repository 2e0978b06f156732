import logging
from typing import Dict, List, Optional

from core.alerts import TradeNotifier
from core.database import (
    SessionLocal, StoredDecision, StoredExecutionRecord, StoredPosition, StoredTradeHistory
)
from core.portfolio_state import (
    DecisionAction, DecisionSnapshot, DecisionStatus, MarketRegimeSnapshot, MarketSummary, PositionType
)
from core.portfolio_store import PortfolioStore
from core.position_sizer import PositionSizer
from core.risk_gatekeeper import DecisionValidator, is_expired
from core.stops import calculate_dynamic_sltp
from core.trading_config import TradingConfig, get_config
from trading_interface.events.schemas import ExecutionSummary, UserExecutionResult, ValidationResult
from trading_interface.execution.errors import (
    DuplicatePositionError, InsufficientFundsError, PositionLimitExceededError,
    PriceUnavailableError, SkipExecution,
)
from trading_interface.market.base import format_symbol
from trading_interface.market.context import MarketContextProvider

logger = logging.getLogger("ExecutionEngine")

POSITION_TYPE_FOR_ACTION = {
    DecisionAction.BUY:  PositionType.LONG,
    DecisionAction.SELL: PositionType.SHORT,
}


class ExecutionEngine:
    """
    Turns one validated AI decision into positions for every enabled user.
    Each user runs in its own transaction with the portfolio row locked; a
    failure for one user never touches the others. The decision's `executed`
    flag is latched once after the whole batch, and a per-(decision, user)
    execution record makes a retried batch skip users already processed.
    """

    def __init__(
        self,
        market: MarketContextProvider,
        notifier: TradeNotifier,
        session_factory=SessionLocal,
        validator: Optional[DecisionValidator] = None,
        sizer: Optional[PositionSizer] = None,
        config: Optional[TradingConfig] = None,
    ):
        self.market = market
        self.notifier = notifier
        self.session_factory = session_factory
        self.config = config or get_config()
        self.validator = validator or DecisionValidator(self.config)
        self.sizer = sizer or PositionSizer()
        self._handlers = {
            DecisionAction.BUY:  self._execute_buy,
            DecisionAction.SELL: self._execute_sell,
            DecisionAction.HOLD: self._execute_hold,
        }

    # ── Public operations ───────────────────────────────────────────────────

    async def execute_decision(self, decision_id: int) -> ExecutionSummary:
        db = self.session_factory()
        try:
            row = db.query(StoredDecision).filter(StoredDecision.id == decision_id).first()
            if row is None:
                logger.error(f"Decision {decision_id} not found")
                return ExecutionSummary(decision_id=decision_id, symbol="", action="", status="NOT_FOUND",
                                        reason="Decision not found")
            decision = DecisionSnapshot.model_validate(row)
            decision = decision.model_copy(
                update={"symbol": format_symbol(decision.symbol, self.config.quote_asset)}
            )
        finally:
            db.close()

        if decision.executed:
            logger.info(f"Decision {decision_id} already executed ({decision.status.value}) - skipping")
            return self._summary(decision, decision.status.value, "Decision already executed")

        if is_expired(decision, expiry_minutes=self.config.decision_expiry_minutes):
            result = self.validator.validate(decision, None, None)
            return self._reject(decision, result)

        summary: Optional[MarketSummary] = None
        regime: Optional[MarketRegimeSnapshot] = None
        if decision.action != DecisionAction.HOLD:
            summary = self.market.get_todays_summary()
            regime = self.market.get_latest_regime(decision.symbol)
            validation = self.validator.validate(decision, summary, regime)
            if not validation.valid:
                return self._reject(decision, validation)
            self._record_validation(decision, validation, summary, regime)
            decision = decision.model_copy(update={"risk_adjustment": validation.risk_adjustment})

        handler = self._handlers[decision.action]
        return await handler(decision, regime)

    async def execute_pending_decisions(self) -> List[ExecutionSummary]:
        db = self.session_factory()
        try:
            ids = [
                r[0] for r in db.query(StoredDecision.id)
                .filter(StoredDecision.executed == False)  # noqa: E712
                .order_by(StoredDecision.created_at, StoredDecision.id)
                .all()
            ]
        finally:
            db.close()

        summaries = []
        for decision_id in ids:
            try:
                summaries.append(await self.execute_decision(decision_id))
            except Exception as e:
                logger.error(f"Decision {decision_id} aborted: {e}")
        if ids:
            logger.info(f"Processed {len(summaries)}/{len(ids)} pending decisions")
        return summaries

    # ── Action handlers ─────────────────────────────────────────────────────

    async def _execute_buy(self, decision: DecisionSnapshot,
                           regime: Optional[MarketRegimeSnapshot]) -> ExecutionSummary:
        return await self._execute_open(decision, POSITION_TYPE_FOR_ACTION[DecisionAction.BUY], regime)

    async def _execute_sell(self, decision: DecisionSnapshot,
                            regime: Optional[MarketRegimeSnapshot]) -> ExecutionSummary:
        return await self._execute_open(decision, POSITION_TYPE_FOR_ACTION[DecisionAction.SELL], regime)

    async def _execute_hold(self, decision: DecisionSnapshot,
                            regime: Optional[MarketRegimeSnapshot]) -> ExecutionSummary:
        logger.info(f"HOLD decision {decision.id} for {decision.symbol} - no action taken")
        self._latch(decision.id, DecisionStatus.EXECUTED)
        return self._summary(decision, DecisionStatus.EXECUTED.value, "HOLD - no action")

    async def _execute_open(self, decision: DecisionSnapshot, position_type: PositionType,
                            regime: Optional[MarketRegimeSnapshot]) -> ExecutionSummary:
        db = self.session_factory()
        try:
            user_ids = PortfolioStore(db).enabled_user_ids()
        finally:
            db.close()

        logger.info(f"Executing {decision.action.value} {decision.symbol} for {len(user_ids)} users")
        # One quote per decision, fetched before any row lock is taken
        price = await self.market.get_current_price(decision.symbol) if user_ids else None

        results = []
        for user_id in user_ids:
            results.append(await self._open_for_user(decision, position_type, regime, user_id, price))

        self._latch(decision.id, DecisionStatus.EXECUTED)

        summary = self._summary(decision, DecisionStatus.EXECUTED.value, "", results)
        logger.info(
            f"Decision {decision.id} {decision.action.value} {decision.symbol}: "
            f"{summary.succeeded}/{summary.total} opened, {summary.skipped} skipped, {summary.failed} failed"
        )
        if summary.succeeded > 0:
            await self.notifier.notify(TradeNotifier.execution_summary(
                decision.symbol, decision.action.value, summary.succeeded, summary.total
            ))
        return summary

    # ── Per-user transaction ────────────────────────────────────────────────

    async def _open_for_user(self, decision: DecisionSnapshot, position_type: PositionType,
                             regime: Optional[MarketRegimeSnapshot], user_id: int,
                             price: Optional[float]) -> UserExecutionResult:
        db = self.session_factory()
        pending = []
        try:
            if self._already_processed(db, decision.id, user_id):
                logger.info(f"User {user_id} already processed for decision {decision.id} - skipping")
                return UserExecutionResult(user_id=user_id, outcome="SKIPPED", reason="Already processed")

            store = PortfolioStore(db)
            portfolio = store.load_portfolio(user_id)
            if portfolio is None or not portfolio.ai_trade_enabled or portfolio.equity <= 0:
                return UserExecutionResult(user_id=user_id, outcome="SKIPPED", reason="Portfolio not eligible")

            try:
                open_positions = store.open_positions(user_id, lock=True)

                opposite = [p for p in open_positions
                            if p.symbol == decision.symbol and p.position_type == position_type.opposite.value]
                if opposite:
                    if price is None:
                        raise PriceUnavailableError(f"No price to close opposite {decision.symbol} position")
                    for pos in opposite:
                        reason = f"Auto-close for new {position_type.value} position"
                        pnl = store.close_position(portfolio, pos, price, reason)
                        pending.append(TradeNotifier.position_closed(
                            user_id, pos.symbol, pos.position_type, pnl, reason
                        ))
                    open_positions = store.open_positions(user_id)

                if any(p.symbol == decision.symbol and p.position_type == position_type.value
                       for p in open_positions):
                    raise DuplicatePositionError(f"{position_type.value} {decision.symbol} already open")

                if len(open_positions) >= self.config.max_open_positions:
                    raise PositionLimitExceededError(
                        f"{len(open_positions)} open positions (max {self.config.max_open_positions})"
                    )

                sizing = self.sizer.size(
                    store.snapshot(portfolio), decision.confidence, decision.symbol,
                    decision.risk_adjustment, regime,
                )
                if not store.can_open_position(portfolio, sizing.risk_amount):
                    raise InsufficientFundsError(
                        f"Risk amount ${sizing.risk_amount:.2f} exceeds available "
                        f"${store.available_balance(portfolio):.2f}"
                    )

                if price is None or price <= 0:
                    raise PriceUnavailableError(f"Invalid price for {decision.symbol}")

                quantity = sizing.risk_amount / price
                if quantity <= 0:
                    raise InsufficientFundsError(f"Invalid quantity {quantity}")

                position = self._open_position(
                    store, portfolio, decision, position_type, regime, sizing.risk_amount, price, quantity
                )
                db.add(StoredExecutionRecord(decision_id=decision.id, user_id=user_id, outcome="OPENED"))
                db.commit()

            except SkipExecution as skip:
                # Policy no-op: keep any opposite-side close, record the skip
                logger.info(f"User {user_id} skipped for {decision.symbol} [{skip.metric}]: {skip.reason}")
                db.add(StoredExecutionRecord(
                    decision_id=decision.id, user_id=user_id, outcome="SKIPPED", reason=skip.reason
                ))
                db.commit()
                await self.notifier.dispatch(pending)
                return UserExecutionResult(user_id=user_id, outcome="SKIPPED", reason=skip.reason)

        except Exception as e:
            db.rollback()
            logger.error(f"Execution failed for user {user_id} on {decision.symbol}: {e}")
            await self.notifier.notify(TradeNotifier.trade_error(user_id, decision.symbol, decision.action.value, str(e)))
            return UserExecutionResult(user_id=user_id, outcome="FAILED", reason=str(e))
        finally:
            db.close()

        pending.append(TradeNotifier.trade_executed(
            user_id, decision.symbol, position_type.value, position.investment, price
        ))
        await self.notifier.dispatch(pending)
        return UserExecutionResult(user_id=user_id, outcome="OPENED", position_id=position.id)

    def _open_position(self, store: PortfolioStore, portfolio, decision: DecisionSnapshot,
                       position_type: PositionType, regime: Optional[MarketRegimeSnapshot],
                       amount: float, price: float, quantity: float) -> StoredPosition:
        available = store.available_balance(portfolio)
        stop_loss, take_profit = calculate_dynamic_sltp(price, position_type, regime)

        position = StoredPosition(
            user_id=portfolio.user_id,
            portfolio_id=portfolio.id,
            decision_id=decision.id,
            symbol=decision.symbol,
            position_type=position_type.value,
            quantity=quantity,
            entry_price=price,
            current_price=price,
            investment=amount,
            floating_pnl=0.0,
            pnl_percentage=0.0,
            stop_loss=stop_loss,
            take_profit=take_profit,
            status="OPEN",
        )
        store.db.add(position)
        store.db.flush()

        store.db.add(StoredTradeHistory(
            user_id=portfolio.user_id,
            decision_id=decision.id,
            position_id=position.id,
            symbol=decision.symbol,
            action="BUY",
            position_type=position_type.value,
            quantity=quantity,
            price=price,
            amount=amount,
            notes=(
                f"AI {position_type.value} Trade - Confidence: {decision.confidence:g}% - "
                f"Risk: {portfolio.risk_value:g}% - Available Balance: ${available:.2f}"
            ),
        ))
        store.recompute_equity(portfolio)

        logger.info(
            f"OPEN: user {portfolio.user_id} {position_type.value} {decision.symbol} "
            f"qty={quantity:.6f} @ {price} (${amount:.2f}) SL={stop_loss} TP={take_profit}"
        )
        return position

    # ── Decision bookkeeping ────────────────────────────────────────────────

    @staticmethod
    def _already_processed(db, decision_id: int, user_id: int) -> bool:
        return db.query(StoredExecutionRecord.id).filter(
            StoredExecutionRecord.decision_id == decision_id,
            StoredExecutionRecord.user_id == user_id,
        ).first() is not None

    def _reject(self, decision: DecisionSnapshot, result: ValidationResult) -> ExecutionSummary:
        status = DecisionStatus(result.status or DecisionStatus.REJECTED.value)
        logger.warning(f"Decision {decision.id} {decision.symbol} {status.value}: {result.reason}")
        self._latch(decision.id, status, note=f" [{status.value}: {result.reason}]")
        return self._summary(decision, status.value, result.reason)

    def _record_validation(self, decision: DecisionSnapshot, validation: ValidationResult,
                           summary: Optional[MarketSummary], regime: Optional[MarketRegimeSnapshot]):
        context: Dict = {"validation": validation.reason}
        if summary is not None:
            context["summary"] = summary.model_dump(mode="json")
        if regime is not None:
            context["regime"] = regime.model_dump(mode="json")

        db = self.session_factory()
        try:
            row = db.query(StoredDecision).filter(StoredDecision.id == decision.id).with_for_update().first()
            row.risk_adjustment = validation.risk_adjustment
            row.market_context = context
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _latch(self, decision_id: int, status: DecisionStatus, note: str = ""):
        db = self.session_factory()
        try:
            row = db.query(StoredDecision).filter(StoredDecision.id == decision_id).with_for_update().first()
            row.executed = True
            row.status = status.value
            if note:
                row.explanation = (row.explanation or "") + note
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _summary(decision: DecisionSnapshot, status: str, reason: str,
                 results: Optional[List[UserExecutionResult]] = None) -> ExecutionSummary:
        results = results or []
        return ExecutionSummary(
            decision_id=decision.id,
            symbol=decision.symbol,
            action=decision.action.value,
            status=status,
            reason=reason,
            total=len(results),
            succeeded=sum(1 for r in results if r.outcome == "OPENED"),
            skipped=sum(1 for r in results if r.outcome == "SKIPPED"),
            failed=sum(1 for r in results if r.outcome == "FAILED"),
            results=results,
        )
