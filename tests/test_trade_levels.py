import sys

sys.path.insert(0, '.')

import pytest

from config.settings import ConfigError, LevelTarget, MultiLevelSettings
from strategy.models import CloseReason, PositionRequest, TradeType
from strategy.position_manager import PositionManager
from tests.engine_fixtures import make_settings, multi_level_settings

T0 = 1_700_000_000.0


def _open(manager, trade_type=TradeType.LONG):
    request = PositionRequest(symbol='BTCUSDT', trade_type=trade_type, entry_price=100.0,
                              anomaly_id='a-1', volume_leverage=9.0)
    return manager.open(request, T0)


def test_levels_are_built_from_entry():
    manager = PositionManager(multi_level_settings())
    position = _open(manager)
    numbers = [level.level_number for level in position.levels]
    assert numbers == [1, 2, 3, 4]
    entry = position.levels[0]
    assert entry.executed and entry.volume_fraction == 1.0
    assert entry.commission == pytest.approx(0.3)
    assert position.levels[1].target_price == pytest.approx(100.06)
    assert position.levels[2].target_price == pytest.approx(105.0)
    assert position.take_profit == pytest.approx(105.0)
    assert position.stop_loss == pytest.approx(99.0)
    assert position.remaining_fraction == pytest.approx(1.0)


def test_short_levels_sit_below_entry():
    manager = PositionManager(multi_level_settings())
    position = _open(manager, TradeType.SHORT)
    assert position.levels[1].target_price == pytest.approx(99.94)
    assert position.take_profit == pytest.approx(95.0)


def test_break_even_level_executes_once():
    manager = PositionManager(multi_level_settings())
    _open(manager)
    update = manager.evaluate('BTCUSDT', 100.1, T0 + 60)
    assert [level.level_number for level in update.executed_levels] == [2]
    assert update.exit_reason is None
    level = manager.get('BTCUSDT').levels[1]
    assert level.profit_loss == pytest.approx(0.2)
    assert level.commission == pytest.approx(0.06)

    again = manager.evaluate('BTCUSDT', 100.1, T0 + 120)
    assert again.executed_levels == []
    assert manager.get('BTCUSDT').remaining_fraction == pytest.approx(0.8)


def test_all_levels_executed_closes_by_take_profit():
    manager = PositionManager(multi_level_settings())
    _open(manager)
    manager.evaluate('BTCUSDT', 100.1, T0 + 60)
    update = manager.evaluate('BTCUSDT', 105.5, T0 + 120)
    assert [level.level_number for level in update.executed_levels] == [3, 4]
    assert update.break_even_promoted
    assert update.exit_reason is CloseReason.TAKE_PROFIT

    trade = manager.close('BTCUSDT', 105.5, update.exit_reason, T0 + 120)
    # 0.2 + 2 * 22 gross, less 0.3 + 0.06 + 0.12 + 0.12 commission
    assert trade.profit_loss == pytest.approx(43.6)
    assert trade.profit_loss_percent == pytest.approx(4.36)
    assert trade.commission == pytest.approx(0.6)
    assert trade.levels_executed == 3


def test_price_jump_executes_levels_in_order():
    manager = PositionManager(multi_level_settings())
    _open(manager)
    update = manager.evaluate('BTCUSDT', 105.5, T0 + 60)
    assert [level.level_number for level in update.executed_levels] == [2, 3, 4]


def test_later_level_with_nearer_target_is_not_held_back():
    multi = MultiLevelSettings(
        enabled=True,
        break_even_fraction=0.2,
        levels=(
            LevelTarget(fraction=0.4, target_percent=0.05),
            LevelTarget(fraction=0.4, target_percent=0.03),
        ),
    )
    manager = PositionManager(make_settings(multi_level=multi))
    position = _open(manager)
    assert position.take_profit == pytest.approx(105.0)

    update = manager.evaluate('BTCUSDT', 104.0, T0 + 60)
    assert [level.level_number for level in update.executed_levels] == [2, 4]
    assert update.exit_reason is None

    final = manager.evaluate('BTCUSDT', 105.5, T0 + 120)
    assert [level.level_number for level in final.executed_levels] == [3]
    assert final.exit_reason is CloseReason.TAKE_PROFIT


def test_stop_after_partial_exit_closes_remainder_at_stop_price():
    manager = PositionManager(multi_level_settings())
    _open(manager)
    manager.evaluate('BTCUSDT', 100.1, T0 + 60)
    update = manager.evaluate('BTCUSDT', 98.9, T0 + 120)
    assert update.exit_reason is CloseReason.STOP_LOSS
    assert update.executed_levels == []

    trade = manager.close('BTCUSDT', 98.9, update.exit_reason, T0 + 120)
    assert trade.profit_loss == pytest.approx(-9.2)
    assert trade.profit_loss_percent == pytest.approx(-0.92)
    assert all(level.executed for level in trade.position.levels)


def test_exit_fractions_must_sum_to_one():
    lopsided = MultiLevelSettings(enabled=True, break_even_fraction=0.2,
                                  levels=(LevelTarget(fraction=0.4, target_percent=0.05),))
    with pytest.raises(ConfigError):
        make_settings(multi_level=lopsided)
    # disabled plans are not checked
    make_settings(multi_level=MultiLevelSettings(enabled=False, levels=lopsided.levels))
