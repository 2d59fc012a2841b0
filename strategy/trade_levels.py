import logging
from typing import List

from config.settings import TradingSettings
from .models import Position, TradeLevel
from .pricing import directional_move, offset_price, target_reached

logger = logging.getLogger(__name__)


class MultiLevelExitPlanner:
    """Builds and executes staged partial exits for a position."""

    def __init__(self, settings: TradingSettings):
        self.settings = settings
        self.commission_percent = settings.commission_percent
        self.multi = settings.multi_level

    def build(self, entry_price: float, trade_type, now: float) -> List[TradeLevel]:
        entry = TradeLevel(level_number=1, volume_fraction=1.0, target_price=entry_price)
        entry.execute(
            price=entry_price,
            now=now,
            profit_loss=0.0,
            profit_loss_percent=0.0,
            commission=self.settings.notional * self.commission_percent,
        )
        levels = [entry]
        levels.append(
            TradeLevel(
                level_number=2,
                volume_fraction=self.multi.break_even_fraction,
                target_price=offset_price(entry_price, trade_type, 2 * self.commission_percent),
            )
        )
        for index, level in enumerate(self.multi.levels, start=3):
            levels.append(
                TradeLevel(
                    level_number=index,
                    volume_fraction=level.fraction,
                    target_price=offset_price(entry_price, trade_type, level.target_percent),
                )
            )
        return levels

    def farthest_target(self, levels: List[TradeLevel], trade_type) -> float:
        targets = [level.target_price for level in levels if level.level_number > 1]
        return max(targets) if trade_type.sign > 0 else min(targets)

    def execute_due(self, position: Position, price: float, now: float) -> List[TradeLevel]:
        """Execute every unexecuted exit level whose target ``price`` reaches, in level order.

        Targets need not grow with the level number, so a later level with a
        nearer target can fill while an earlier one keeps waiting.
        """
        executed = []
        for level in position.exit_levels:
            if level.executed or not target_reached(price, level.target_price, position.trade_type):
                continue
            self.fill(position, level, price, now)
            executed.append(level)
            logger.info(
                "%s: level %d executed at %.8f (%.0f%% of notional, pnl %.4f)",
                position.symbol, level.level_number, price, level.volume_fraction * 100, level.profit_loss,
            )
        return executed

    def fill(self, position: Position, level: TradeLevel, price: float, now: float) -> None:
        move = directional_move(position.entry_price, price, position.trade_type)
        size = level.volume_fraction * position.notional
        level.execute(
            price=price,
            now=now,
            profit_loss=size * move,
            profit_loss_percent=move * 100,
            commission=size * self.commission_percent,
        )

    def all_executed(self, position: Position) -> bool:
        return all(level.executed for level in position.levels)
