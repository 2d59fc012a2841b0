import sys

sys.path.insert(0, '.')

import pytest

from analytics.statistics import StatisticsAccumulator, watchlist_summary
from strategy.anomaly_detector import AnomalyDetector
from strategy.models import CloseReason, LeadOutcome, LeadRecord, PositionRequest, TradeType
from strategy.position_manager import PositionManager
from tests.engine_fixtures import anomaly_window, make_settings

DAY = 86400.0
T0 = 1_700_006_400.0  # 2023-11-15 00:00:00 UTC


def _ledger():
    manager = PositionManager(make_settings())
    plan = [
        ('AUSDT', TradeType.LONG, 103.0, CloseReason.TAKE_PROFIT, 0.0, 3600.0),
        ('BUSDT', TradeType.LONG, 99.0, CloseReason.STOP_LOSS, 600.0, 1200.0),
        ('CUSDT', TradeType.SHORT, 97.0, CloseReason.TAKE_PROFIT, DAY, 7200.0),
    ]
    for symbol, trade_type, exit_price, reason, opened, held in plan:
        request = PositionRequest(symbol=symbol, trade_type=trade_type, entry_price=100.0,
                                  anomaly_id=symbol, volume_leverage=9.0)
        manager.open(request, T0 + opened)
        manager.close(symbol, exit_price, reason, T0 + opened + held)
    return manager.ledger


def _lead(outcome, minutes):
    return LeadRecord(symbol='XUSDT', trade_type=TradeType.LONG, anomaly_id='x', outcome=outcome,
                      entered_at=T0, resolved_at=T0 + minutes * 60, volume_leverage=9.0)


def test_empty_ledgers_produce_zeroed_statistics():
    stats = StatisticsAccumulator().compute([], [], now=T0)
    assert stats.total_trades == 0
    assert stats.win_rate == 0.0
    assert stats.best_trade is None
    assert stats.conversion_rate == 0.0
    assert stats.to_dict()['daily'] == {}


def test_trade_statistics_over_closed_ledger():
    stats = StatisticsAccumulator().compute(_ledger(), [], now=T0 + DAY + 7200.0)
    assert stats.total_trades == 3
    assert stats.winning_trades == 2
    assert stats.losing_trades == 1
    assert stats.win_rate == 66.7
    assert stats.total_profit_percent == pytest.approx(5.0)
    assert stats.average_profit_percent == pytest.approx(1.67)
    # first of the equal 3% winners is reported as best
    assert stats.best_trade.symbol == 'AUSDT'
    assert stats.worst_trade.symbol == 'BUSDT'
    assert stats.longest_trade.symbol == 'CUSDT'
    assert stats.shortest_trade.symbol == 'BUSDT'
    assert stats.days_running == 2
    assert stats.average_trades_per_day == 1.5
    assert set(stats.daily) == {'2023-11-15', '2023-11-16'}
    assert stats.daily['2023-11-15'].trades == 2
    assert stats.daily['2023-11-15'].losses == 1
    assert stats.daily['2023-11-16'].wins == 1


def test_days_running_is_at_least_one():
    stats = StatisticsAccumulator(clock=lambda: T0 + 4000.0).compute(_ledger()[:1], [])
    assert stats.days_running == 1
    assert stats.average_trades_per_day == 1.0


def test_lead_conversion_and_lifetime():
    leads = [
        _lead(LeadOutcome.CONVERTED, 10),
        _lead(LeadOutcome.CANCELLED, 20),
        _lead(LeadOutcome.TIMEOUT, 90),
    ]
    stats = StatisticsAccumulator().compute([], leads, now=T0)
    assert stats.total_leads == 3
    assert stats.converted_leads == 1
    assert stats.conversion_rate == 33.3
    assert stats.average_lead_lifetime_minutes == 40.0
    assert stats.lead_outcomes == {'converted': 1, 'cancelled': 1, 'timeout': 1}


def test_watchlist_summary_counts_directions():
    settings = make_settings()
    detector = AnomalyDetector(settings)
    long_anomaly = detector.detect('AUSDT', anomaly_window(), T0)
    short_anomaly = detector.detect('BUSDT', anomaly_window(anomaly_price=100.8, high=101.0, low=100.6,
                                                             anomaly_volume=1500.0), T0)
    summary = watchlist_summary([long_anomaly, short_anomaly])
    assert summary == {'total': 2, 'long': 1, 'short': 1, 'average_volume_leverage': 12.0}
    assert watchlist_summary([])['average_volume_leverage'] == 0.0
