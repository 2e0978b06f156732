"""
Trade Notification System
===========================
Fire-and-forget notifications emitted by the execution engine and the
auto-close monitor:
  - trade_executed     a position was opened for a user
  - trade_error        a user's execution rolled back
  - position_closed    a position was settled (SL/TP, risk band, time limit, manual)
  - execution_summary  aggregate result for one decision

Notifiers are only invoked after the owning transaction has committed.
A notifier failure is logged and never propagates into trading logic.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

import httpx

from core.trading_config import get_config
from trading_interface.events.schemas import TradeNotification

logger = logging.getLogger("Notifier")


@dataclass
class TradeAlert:
    alert_id:   str
    kind:       str    # trade_executed | trade_error | position_closed | execution_summary
    user_id:    Optional[int]
    symbol:     str
    severity:   str    # INFO | WARNING
    message:    str
    pnl:        Optional[float] = None
    timestamp:  datetime = field(default_factory=datetime.utcnow)
    is_read:    bool = False

    def to_dict(self):
        return {
            "alert_id":  self.alert_id,
            "kind":      self.kind,
            "user_id":   self.user_id,
            "symbol":    self.symbol,
            "severity":  self.severity,
            "message":   self.message,
            "pnl":       self.pnl,
            "timestamp": self.timestamp.isoformat(),
            "is_read":   self.is_read,
        }


# In-process store, cleared on restart
_alerts: List[TradeAlert] = []
MAX_ALERTS = 100


def add_alert(event: TradeNotification) -> TradeAlert:
    alert = TradeAlert(
        alert_id  = str(uuid.uuid4())[:8],
        kind      = event.kind,
        user_id   = event.user_id,
        symbol    = event.symbol,
        severity  = "WARNING" if event.kind == "trade_error" else "INFO",
        message   = event.message,
        pnl       = event.pnl,
        timestamp = event.timestamp,
    )
    _alerts.append(alert)
    if len(_alerts) > MAX_ALERTS:
        _alerts.pop(0)
    return alert


def get_all_alerts(unread_only: bool = False, user_id: Optional[int] = None) -> List[TradeAlert]:
    alerts = [a for a in _alerts if user_id is None or a.user_id == user_id]
    if unread_only:
        alerts = [a for a in alerts if not a.is_read]
    return list(reversed(alerts))  # Newest first


def mark_read(alert_id: str):
    for a in _alerts:
        if a.alert_id == alert_id:
            a.is_read = True
            break


def get_unread_count() -> int:
    return sum(1 for a in _alerts if not a.is_read)


def clear_alerts():
    _alerts.clear()


# ---------------------------------------------------------------------------
# Notifier interface
# ---------------------------------------------------------------------------
class TradeNotifier(ABC):

    @abstractmethod
    async def send(self, event: TradeNotification) -> None:
        pass

    async def notify(self, event: TradeNotification) -> None:
        try:
            await self.send(event)
        except Exception as e:
            logger.error(f"{type(self).__name__} failed to deliver {event.kind} for {event.symbol}: {e}")

    async def dispatch(self, events: Sequence[TradeNotification]) -> None:
        for event in events:
            await self.notify(event)

    # ── Event builders ──────────────────────────────────────────────────────

    @staticmethod
    def trade_executed(user_id: int, symbol: str, position_type: str,
                       amount: float, price: float) -> TradeNotification:
        return TradeNotification(
            kind="trade_executed",
            user_id=user_id,
            symbol=symbol,
            action=position_type,
            message=f"Opened {position_type} {symbol}: ${amount:,.2f} @ {price}",
        )

    @staticmethod
    def trade_error(user_id: int, symbol: str, action: str, error: str) -> TradeNotification:
        return TradeNotification(
            kind="trade_error",
            user_id=user_id,
            symbol=symbol,
            action=action,
            reason=error,
            message=f"{action} {symbol} failed: {error}",
        )

    @staticmethod
    def position_closed(user_id: int, symbol: str, position_type: str,
                        pnl: float, reason: str) -> TradeNotification:
        return TradeNotification(
            kind="position_closed",
            user_id=user_id,
            symbol=symbol,
            action=position_type,
            pnl=pnl,
            reason=reason,
            message=f"Closed {position_type} {symbol} ({reason}). PNL: ${pnl:,.2f}",
        )

    @staticmethod
    def execution_summary(symbol: str, action: str, succeeded: int, total: int) -> TradeNotification:
        return TradeNotification(
            kind="execution_summary",
            symbol=symbol,
            action=action,
            message=f"AI {action} {symbol} executed for {succeeded}/{total} users",
        )


class AlertNotifier(TradeNotifier):
    """Feeds the in-process alert list served by /api/alerts."""

    async def send(self, event: TradeNotification) -> None:
        alert = add_alert(event)
        if alert.severity == "WARNING":
            logger.warning(f"ALERT [{event.kind}] user={event.user_id} {event.symbol}: {event.message}")
        else:
            logger.info(f"ALERT [{event.kind}] user={event.user_id} {event.symbol}: {event.message}")


class WebhookNotifier(TradeNotifier):
    """POSTs each notification as JSON to an external push gateway."""

    def __init__(self, url: str, timeout: Optional[float] = None, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=timeout or get_config().http_timeout_seconds)

    async def send(self, event: TradeNotification) -> None:
        response = await self.client.post(self.url, json=event.model_dump(mode="json"))
        response.raise_for_status()

    async def aclose(self):
        await self.client.aclose()


class CompositeNotifier(TradeNotifier):

    def __init__(self, notifiers: Sequence[TradeNotifier]):
        self.notifiers = list(notifiers)

    async def send(self, event: TradeNotification) -> None:
        for notifier in self.notifiers:
            await notifier.notify(event)


def build_notifier() -> TradeNotifier:
    url = get_config().notify_webhook_url
    if url:
        return CompositeNotifier([AlertNotifier(), WebhookNotifier(url)])
    return AlertNotifier()
