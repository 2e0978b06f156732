import asyncio
from datetime import datetime, timedelta

import pytest

from conftest import add_portfolio, add_position
from core.database import StoredPortfolio, StoredPosition, StoredTradeHistory
from core.trading_config import RISK_MODE_BANDS
from trading_interface.execution.monitor import (
    AutoCloseMonitor, manual_sltp_reason, risk_band_reason, time_limit_reason,
)


@pytest.fixture
def monitor(market, notifier, session_factory):
    return AutoCloseMonitor(market, notifier, session_factory=session_factory)


def reload(db, model, pk):
    db.expire_all()
    return db.get(model, pk)


class TestCloseRules:
    def test_manual_sltp_needs_both_levels(self):
        position = StoredPosition(position_type="LONG", stop_loss=95.0, take_profit=None)
        assert manual_sltp_reason(position, 90.0) is None

    @pytest.mark.parametrize("position_type,price,expected", [
        ("LONG", 95.0, "Manual Stop Loss"),
        ("LONG", 110.0, "Manual Take Profit"),
        ("LONG", 100.0, None),
        ("SHORT", 110.0, "Manual Stop Loss"),
        ("SHORT", 90.0, "Manual Take Profit"),
    ])
    def test_manual_sltp(self, position_type, price, expected):
        sl, tp = (95.0, 110.0) if position_type == "LONG" else (110.0, 90.0)
        position = StoredPosition(position_type=position_type, stop_loss=sl, take_profit=tp)
        assert manual_sltp_reason(position, price) == expected

    @pytest.mark.parametrize("mode,pnl_pct,expected", [
        ("CONSERVATIVE", -2.0, "Auto Stop Loss -2%"),
        ("CONSERVATIVE", 4.5, "Auto Take Profit 4%"),
        ("MODERATE", -2.9, None),
        ("MODERATE", 6.0, "Auto Take Profit 6%"),
        ("AGGRESSIVE", -5.1, "Auto Stop Loss -5%"),
        ("AGGRESSIVE", 9.9, None),
    ])
    def test_risk_bands(self, mode, pnl_pct, expected):
        assert risk_band_reason(pnl_pct, mode, RISK_MODE_BANDS) == expected

    def test_time_limit(self):
        now = datetime(2025, 11, 28, 12, 0)
        assert time_limit_reason(now - timedelta(hours=24), now, 24) == "Time Limit 24h"
        assert time_limit_reason(now - timedelta(hours=23, minutes=59), now, 24) is None


class TestFloatingPnl:
    def test_equity_matches_balance_plus_open_floating(self, monitor, db, price_feed):
        p1 = add_portfolio(db, 1)
        p2 = add_portfolio(db, 2, balance=5_000.0)
        add_position(db, p1, symbol="BTCUSDT", entry_price=80.0, investment=800.0)
        add_position(db, p1, symbol="ETHUSDT", position_type="SHORT", entry_price=55.0, investment=550.0)
        add_position(db, p2, symbol="SOLUSDT", entry_price=20.0, investment=200.0, floating_pnl=7.0)

        updated = asyncio.run(monitor.update_all_floating_pnl())

        assert updated == 2  # SOL has no price and keeps its last mark
        for portfolio in (p1, p2):
            row = reload(db, StoredPortfolio, portfolio.id)
            floating = sum(p.floating_pnl for p in db.query(StoredPosition)
                           .filter_by(user_id=row.user_id, status="OPEN"))
            assert row.equity == pytest.approx(row.balance + floating)

        assert reload(db, StoredPortfolio, p1.id).floating_pnl == pytest.approx(200.0 + 50.0)
        assert reload(db, StoredPortfolio, p2.id).equity == pytest.approx(5_007.0)
        assert reload(db, StoredPortfolio, p1.id).balance == pytest.approx(10_000.0)

    def test_broken_portfolio_does_not_block_others(self, monitor, db):
        healthy = add_portfolio(db, 1)
        broken = add_portfolio(db, 2)
        position = add_position(db, healthy, entry_price=90.0, investment=900.0)
        add_position(db, broken, symbol="ETHUSDT", entry_price=40.0, investment=400.0)
        broken.balance = None
        db.commit()

        updated = asyncio.run(monitor.update_all_floating_pnl())

        assert updated == 1
        assert reload(db, StoredPosition, position.id).floating_pnl == pytest.approx(100.0)
        assert reload(db, StoredPortfolio, healthy.id).equity == pytest.approx(10_100.0)


class TestAutoClose:
    def test_precedence_and_settlement(self, monitor, db, notifier, price_feed):
        portfolio = add_portfolio(db, 1, risk_mode="MODERATE")
        sltp = add_position(db, portfolio, symbol="BTCUSDT", entry_price=104.0, investment=1040.0,
                            stop_loss=101.0, take_profit=120.0)
        band = add_position(db, portfolio, symbol="ETHUSDT", entry_price=40.0, investment=400.0)
        stale = add_position(db, portfolio, symbol="XRPUSDT", entry_price=1.0, investment=100.0,
                             opened_at=datetime.utcnow() - timedelta(hours=25))
        keep = add_position(db, portfolio, symbol="BTCUSDT", position_type="SHORT",
                            entry_price=100.5, investment=100.5)
        price_feed.prices["XRPUSDT"] = 1.0

        summary = asyncio.run(monitor.auto_close_positions())

        assert summary.closed_count == 3
        assert summary.total_pnl == pytest.approx(-40.0 + 100.0 + 0.0)
        assert reload(db, StoredPosition, sltp.id).close_reason == "Manual Stop Loss"
        assert reload(db, StoredPosition, band.id).close_reason == "Auto Take Profit 6%"
        assert reload(db, StoredPosition, stale.id).close_reason == "Time Limit 24h"
        assert reload(db, StoredPosition, keep.id).status == "OPEN"

        row = reload(db, StoredPortfolio, portfolio.id)
        assert row.balance == pytest.approx(10_060.0)
        assert row.realized_pnl == pytest.approx(60.0)
        assert row.equity == pytest.approx(row.balance + reload(db, StoredPosition, keep.id).floating_pnl)
        assert db.query(StoredTradeHistory).filter(StoredTradeHistory.notes.like("CLOSE:%")).count() == 3
        assert notifier.kinds().count("position_closed") == 3

    def test_missing_price_is_skipped(self, monitor, db):
        portfolio = add_portfolio(db, 1)
        add_position(db, portfolio, symbol="DOGEUSDT", entry_price=1.0, investment=100.0)
        summary = asyncio.run(monitor.auto_close_positions())
        assert (summary.skipped, summary.closed_count) == (1, 0)

    def test_monitor_sltp_ignores_bands_and_time(self, monitor, db):
        portfolio = add_portfolio(db, 1, risk_mode="CONSERVATIVE")
        add_position(db, portfolio, symbol="ETHUSDT", entry_price=40.0, investment=400.0,
                     opened_at=datetime.utcnow() - timedelta(hours=48))
        add_position(db, portfolio, symbol="BTCUSDT", entry_price=90.0, investment=900.0,
                     stop_loss=85.0, take_profit=99.0)

        assert asyncio.run(monitor.monitor_sltp()) == 1
        db.expire_all()
        assert db.query(StoredPosition).filter_by(status="CLOSED").one().close_reason == "Manual Take Profit"

    def test_position_closed_concurrently_is_not_settled_twice(self, monitor, db):
        portfolio = add_portfolio(db, 1)
        position = add_position(db, portfolio, entry_price=90.0, investment=900.0, take_profit=95.0, stop_loss=80.0)
        asyncio.run(monitor.close_position_manually(position.id))
        summary = asyncio.run(monitor.auto_close_positions())
        assert summary.closed_count == 0
        assert reload(db, StoredPortfolio, portfolio.id).realized_pnl == pytest.approx(100.0)


class TestManualClose:
    def test_long_closes_at_bid_short_at_ask(self, monitor, db, price_feed):
        portfolio = add_portfolio(db, 1)
        long_pos = add_position(db, portfolio, symbol="BTCUSDT", entry_price=90.0, investment=900.0)
        short_pos = add_position(db, portfolio, symbol="ETHUSDT", position_type="SHORT",
                                 entry_price=60.0, investment=600.0)
        price_feed.bids["BTCUSDT"] = 99.0
        price_feed.asks["ETHUSDT"] = 51.0

        long_result = asyncio.run(monitor.close_position_manually(long_pos.id, 1, "User request"))
        short_result = asyncio.run(monitor.close_position_manually(short_pos.id, 1))

        assert long_result.success and long_result.close_price == 99.0
        assert long_result.pnl == pytest.approx(90.0)
        assert short_result.close_price == 51.0
        assert short_result.pnl == pytest.approx(90.0)
        assert short_result.available_balance == pytest.approx(10_180.0)
        notes = [h.notes for h in db.query(StoredTradeHistory).order_by(StoredTradeHistory.id)]
        assert notes == ["MANUAL CLOSE: User request", "MANUAL CLOSE: Manual Close"]

    def test_falls_back_to_last_price(self, monitor, db):
        portfolio = add_portfolio(db, 1)
        position = add_position(db, portfolio, entry_price=90.0, investment=900.0)
        result = asyncio.run(monitor.close_position_manually(position.id))
        assert result.close_price == 100.0

    def test_wrong_owner_or_closed_position_fails(self, monitor, db):
        portfolio = add_portfolio(db, 1)
        position = add_position(db, portfolio)
        assert not asyncio.run(monitor.close_position_manually(position.id, user_id=2)).success
        assert asyncio.run(monitor.close_position_manually(position.id)).success
        again = asyncio.run(monitor.close_position_manually(position.id))
        assert not again.success
        assert "already closed" in again.message

    def test_close_all(self, monitor, db, notifier):
        portfolio = add_portfolio(db, 1)
        add_position(db, portfolio, symbol="BTCUSDT", entry_price=90.0, investment=900.0)
        add_position(db, portfolio, symbol="ETHUSDT", entry_price=40.0, investment=400.0)
        add_position(db, portfolio, symbol="SOLUSDT", entry_price=10.0, investment=100.0)

        summary = asyncio.run(monitor.close_all_positions(1))

        assert summary.closed_count == 2
        assert summary.total_pnl == pytest.approx(200.0)
        assert [r.success for r in summary.results] == [True, True, False]
        assert summary.message == "Closed 2 positions. Total PNL: $200.00"
        assert notifier.kinds() == ["position_closed", "position_closed"]
