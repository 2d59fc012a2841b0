import sys

sys.path.insert(0, '.')

import pytest

from strategy.models import CloseReason, InvariantViolation, PositionRequest, TradeType
from strategy.position_manager import PositionManager
from tests.engine_fixtures import make_settings

T0 = 1_700_000_000.0


def _request(trade_type=TradeType.LONG, entry=100.0, symbol='BTCUSDT'):
    return PositionRequest(symbol=symbol, trade_type=trade_type, entry_price=entry,
                           anomaly_id='a-1', volume_leverage=9.0)


def test_open_long_sets_stop_and_target():
    manager = PositionManager(make_settings())
    position = manager.open(_request(), T0)
    assert position.stop_loss == pytest.approx(99.0)
    assert position.take_profit == pytest.approx(103.0)
    assert not position.multi_level


def test_open_short_is_mirrored():
    manager = PositionManager(make_settings())
    position = manager.open(_request(TradeType.SHORT), T0)
    assert position.stop_loss == pytest.approx(101.0)
    assert position.take_profit == pytest.approx(97.0)


def test_second_open_for_same_symbol_is_rejected():
    manager = PositionManager(make_settings())
    manager.open(_request(), T0)
    with pytest.raises(InvariantViolation):
        manager.open(_request(), T0 + 1)
    assert len(manager) == 1


def test_break_even_promotes_exactly_once_and_never_reverts():
    manager = PositionManager(make_settings())
    manager.open(_request(), T0)

    first = manager.evaluate('BTCUSDT', 100.0, T0 + 60)
    assert not first.break_even_promoted

    promoted = manager.evaluate('BTCUSDT', 100.6, T0 + 120)
    assert promoted.break_even_promoted
    assert promoted.progress == 0.2
    assert promoted.previous_stop == pytest.approx(99.0)
    assert promoted.new_stop == pytest.approx(100.1)
    assert promoted.exit_reason is None

    lower = manager.evaluate('BTCUSDT', 100.3, T0 + 180)
    assert not lower.break_even_promoted
    assert manager.get('BTCUSDT').stop_loss == pytest.approx(100.1)
    assert lower.exit_reason is None

    final = manager.evaluate('BTCUSDT', 103.01, T0 + 240)
    assert not final.break_even_promoted
    assert final.exit_reason is CloseReason.TAKE_PROFIT


def test_stop_loss_and_take_profit_triggers():
    manager = PositionManager(make_settings())
    manager.open(_request(), T0)
    assert manager.evaluate('BTCUSDT', 99.5, T0 + 1).exit_reason is None
    assert manager.evaluate('BTCUSDT', 98.99, T0 + 2).exit_reason is CloseReason.STOP_LOSS

    manager.open(_request(TradeType.SHORT, symbol='ETHUSDT'), T0)
    assert manager.evaluate('ETHUSDT', 96.9, T0 + 3).exit_reason is CloseReason.TAKE_PROFIT


def test_stop_wins_when_both_exits_are_satisfied():
    # a buffer beyond the target puts the promoted stop above take-profit
    manager = PositionManager(make_settings(break_even_buffer_percent=0.06))
    manager.open(_request(), T0)
    update = manager.evaluate('BTCUSDT', 104.0, T0 + 60)
    assert update.break_even_promoted
    assert update.exit_reason is CloseReason.STOP_LOSS


def test_close_freezes_trade_into_ledger():
    manager = PositionManager(make_settings())
    manager.open(_request(), T0)
    trade = manager.close('BTCUSDT', 103.0, CloseReason.TAKE_PROFIT, T0 + 3600)
    assert 'BTCUSDT' not in manager
    assert manager.ledger == [trade]
    assert trade.profit_loss_percent == pytest.approx(3.0)
    assert trade.profit_loss == pytest.approx(30.0)
    assert trade.duration == 3600
    assert trade.position.status.value == 'closed'
    with pytest.raises(InvariantViolation):
        manager.close('BTCUSDT', 103.0, CloseReason.TAKE_PROFIT, T0 + 3601)


def test_short_loss_is_negative():
    manager = PositionManager(make_settings())
    manager.open(_request(TradeType.SHORT), T0)
    trade = manager.close('BTCUSDT', 101.0, CloseReason.STOP_LOSS, T0 + 60)
    assert trade.profit_loss_percent == pytest.approx(-1.0)


def test_unknown_symbol_evaluates_to_empty_update():
    manager = PositionManager(make_settings())
    update = manager.evaluate('NOPE', 1.0, T0)
    assert update.empty


def test_snapshot_and_ledger_round_trip_preserves_order():
    manager = PositionManager(make_settings())
    for i, symbol in enumerate(['AUSDT', 'BUSDT', 'CUSDT']):
        manager.open(_request(symbol=symbol), T0 + i)
        manager.close(symbol, 100.0 + i, CloseReason.TAKE_PROFIT, T0 + 100 + i)
    manager.open(_request(symbol='DUSDT', entry=0.123456789), T0)
    manager.evaluate('DUSDT', 0.1236, T0 + 5)

    restored = PositionManager(make_settings())
    assert restored.restore(manager.snapshot()) == 1
    assert restored.restore_ledger(manager.ledger_snapshot()) == 3
    assert restored.snapshot() == manager.snapshot()
    assert restored.ledger_snapshot() == manager.ledger_snapshot()
    assert [t.symbol for t in restored.ledger] == ['AUSDT', 'BUSDT', 'CUSDT']
