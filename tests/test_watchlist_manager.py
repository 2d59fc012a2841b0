import sys

sys.path.insert(0, '.')

import pytest

from strategy.anomaly_detector import AnomalyDetector
from strategy.models import InvariantViolation, LeadOutcome, TradeType, WatchState
from strategy.watchlist_manager import WatchlistManager
from tests.engine_fixtures import anomaly_window, make_settings

NOW = 1_700_010_000.0


def _anomaly(settings, symbol='BTCUSDT', **window_kwargs):
    detector = AnomalyDetector(settings)
    return detector.detect(symbol, anomaly_window(**window_kwargs), NOW)


def test_add_computes_levels_and_arms_consolidated_anomaly():
    settings = make_settings()
    manager = WatchlistManager(settings)
    transition = manager.add(_anomaly(settings), NOW)
    anomaly = manager.get('BTCUSDT')
    assert transition.to_state is WatchState.ARMED
    assert anomaly.is_consolidated
    assert anomaly.watchlist_entered_at == NOW
    assert anomaly.entry_level == pytest.approx(99.2 * 1.004)
    assert anomaly.cancel_level == pytest.approx(99.2 * 0.994)


def test_wide_anomaly_candle_fails_consolidation():
    settings = make_settings()
    manager = WatchlistManager(settings)
    transition = manager.add(_anomaly(settings, high=101.0, low=98.0), NOW)
    assert transition.to_state is WatchState.CONSOLIDATION_FAILED
    lead = manager.discard('BTCUSDT', LeadOutcome.CONSOLIDATION_FAILURE, NOW)
    assert not lead.converted
    assert 'BTCUSDT' not in manager


def test_without_consolidation_requirement_goes_straight_to_armed():
    settings = make_settings(require_consolidation=False)
    manager = WatchlistManager(settings)
    transition = manager.add(_anomaly(settings, high=101.0, low=98.0), NOW)
    assert transition.to_state is WatchState.ARMED


def test_duplicate_or_position_holding_symbol_is_rejected():
    settings = make_settings()
    manager = WatchlistManager(settings)
    manager.add(_anomaly(settings), NOW)
    with pytest.raises(InvariantViolation):
        manager.add(_anomaly(settings), NOW)
    with pytest.raises(InvariantViolation):
        manager.add(_anomaly(settings, symbol='ETHUSDT'), NOW, has_open_position=True)


def test_cancel_level_before_entry_cancels_without_a_position():
    settings = make_settings()
    manager = WatchlistManager(settings)
    manager.add(_anomaly(settings), NOW)
    assert manager.evaluate('BTCUSDT', 99.3, NOW + 60) is None
    transition = manager.evaluate('BTCUSDT', 98.5, NOW + 120)
    assert transition.to_state is WatchState.CANCELLED
    assert transition.outcome is LeadOutcome.CANCELLED
    with pytest.raises(InvariantViolation):
        manager.confirm('BTCUSDT', 98.5, NOW + 120)
    lead = manager.discard('BTCUSDT', transition.outcome, NOW + 120, 98.5)
    assert lead.outcome is LeadOutcome.CANCELLED
    assert lead.lifetime_minutes == 2.0
    assert manager.leads == [lead]


def test_entry_level_confirms_and_hands_off_request():
    settings = make_settings()
    manager = WatchlistManager(settings)
    anomaly = _anomaly(settings)
    manager.add(anomaly, NOW)
    transition = manager.evaluate('BTCUSDT', 99.7, NOW + 300)
    assert transition.to_state is WatchState.CONFIRMED
    request = manager.confirm('BTCUSDT', 99.7, NOW + 300)
    assert request.entry_price == 99.7
    assert request.trade_type is TradeType.LONG
    assert request.anomaly_id == anomaly.anomaly_id
    assert request.volume_leverage == 9.0
    assert 'BTCUSDT' not in manager
    assert manager.leads[-1].converted


def test_short_entry_and_cancel_are_mirrored():
    settings = make_settings()
    manager = WatchlistManager(settings)
    manager.add(_anomaly(settings, anomaly_price=100.8, high=101.0, low=100.6), NOW)
    anomaly = manager.get('BTCUSDT')
    assert anomaly.entry_level < 100.8 < anomaly.cancel_level
    assert manager.evaluate('BTCUSDT', 100.9, NOW + 1) is None
    assert manager.evaluate('BTCUSDT', 100.3, NOW + 2).to_state is WatchState.CONFIRMED


def test_unconfirmed_entry_times_out_after_confirmation_window():
    settings = make_settings()
    manager = WatchlistManager(settings)
    manager.add(_anomaly(settings), NOW)
    window = settings.confirmation_timeout_seconds
    assert manager.evaluate('BTCUSDT', 99.3, NOW + window) is None
    transition = manager.evaluate('BTCUSDT', 99.3, NOW + window + settings.interval_seconds)
    assert transition.to_state is WatchState.TIMED_OUT
    lead = manager.discard('BTCUSDT', transition.outcome, NOW + window + settings.interval_seconds)
    assert lead.outcome is LeadOutcome.TIMEOUT
    assert not lead.converted


def test_expire_sweeps_silent_entries():
    settings = make_settings()
    manager = WatchlistManager(settings)
    manager.add(_anomaly(settings), NOW)
    manager.add(_anomaly(settings, symbol='ETHUSDT'), NOW + 1200)
    later = NOW + (settings.entry_confirmation_tfs + 1) * settings.interval_seconds
    transitions = manager.expire(later)
    assert [t.symbol for t in transitions] == ['BTCUSDT']
    assert manager.get('BTCUSDT').state is WatchState.TIMED_OUT
    # terminal entries ignore later prices
    assert manager.evaluate('BTCUSDT', 120.0, later + 1) is None


def test_unknown_symbol_is_a_no_op():
    manager = WatchlistManager(make_settings())
    assert manager.evaluate('NOPE', 1.0, NOW) is None
    assert manager.discard('NOPE', LeadOutcome.TIMEOUT, NOW) is None


def test_snapshot_restore_round_trip():
    settings = make_settings()
    manager = WatchlistManager(settings)
    manager.add(_anomaly(settings), NOW)
    manager.evaluate('BTCUSDT', 99.3, NOW + 30)
    snapshot = manager.snapshot()

    restored = WatchlistManager(settings)
    assert restored.restore(snapshot + [{'symbol': 'BROKEN'}]) == 1
    assert restored.snapshot() == snapshot
    assert restored.get('BTCUSDT').last_observed_price == 99.3
