from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import logging

from config.settings import TradingSettings
from .models import (
    CloseReason,
    ClosedTrade,
    InvariantViolation,
    Position,
    PositionRequest,
    TradeLevel,
    TradeType,
)
from .pricing import directional_move, offset_price, progress_to_target, stop_hit, target_reached
from .trade_levels import MultiLevelExitPlanner

logger = logging.getLogger(__name__)


@dataclass
class PositionUpdate:
    symbol: str
    price: Optional[float] = None
    executed_levels: List[TradeLevel] = field(default_factory=list)
    break_even_promoted: bool = False
    previous_stop: Optional[float] = None
    new_stop: Optional[float] = None
    progress: Optional[float] = None
    exit_reason: Optional[CloseReason] = None

    @property
    def empty(self) -> bool:
        return not (self.executed_levels or self.break_even_promoted or self.exit_reason)


class PositionManager:
    """Owns open positions, keyed by symbol, and the closed-trade ledger."""

    def __init__(self, settings: TradingSettings):
        self.settings = settings
        self.positions: Dict[str, Position] = {}
        self.ledger: List[ClosedTrade] = []
        self.planner = MultiLevelExitPlanner(settings) if settings.multi_level.enabled else None

    def __contains__(self, symbol: str) -> bool:
        return symbol in self.positions

    def __len__(self) -> int:
        return len(self.positions)

    def get(self, symbol: str) -> Optional[Position]:
        return self.positions.get(symbol)

    def symbols(self) -> List[str]:
        return list(self.positions)

    def open(self, request: PositionRequest, now: float) -> Position:
        return self.add(self.prepare(request, now))

    def prepare(self, request: PositionRequest, now: float) -> Position:
        """Build and validate the position for ``request`` without storing it."""
        symbol = request.symbol
        if symbol in self.positions:
            raise InvariantViolation(f"{symbol} already holds an open position")
        entry = request.entry_price
        trade_type = request.trade_type
        stop_loss = offset_price(entry, trade_type, self.settings.stop_loss_percent, favourable=False)
        levels: List[TradeLevel] = []
        if self.planner is not None:
            levels = self.planner.build(entry, trade_type, now)
            take_profit = self.planner.farthest_target(levels, trade_type)
        else:
            take_profit = offset_price(entry, trade_type, self.settings.take_profit_percent)

        position = Position(
            symbol=symbol,
            trade_type=trade_type,
            entry_price=entry,
            entry_time=now,
            stop_loss=stop_loss,
            take_profit=take_profit,
            notional=self.settings.notional,
            anomaly_id=request.anomaly_id,
            volume_leverage=request.volume_leverage,
            levels=levels,
            last_price=entry,
            last_updated_at=now,
        )
        return position

    def add(self, position: Position) -> Position:
        if position.symbol in self.positions:
            raise InvariantViolation(f"{position.symbol} already holds an open position")
        self.positions[position.symbol] = position
        logger.info(
            "%s: opened %s at %.8f (SL %.8f, TP %.8f%s)",
            position.symbol, position.trade_type.value, position.entry_price,
            position.stop_loss, position.take_profit,
            ", %d levels" % len(position.levels) if position.levels else "",
        )
        return position

    def evaluate(self, symbol: str, price: float, now: float) -> PositionUpdate:
        update = PositionUpdate(symbol=symbol, price=price)
        position = self.positions.get(symbol)
        if position is None:
            return update
        position.last_price = price
        position.last_updated_at = now

        self._promote_break_even(position, price, update)

        if stop_hit(price, position.stop_loss, position.trade_type):
            update.exit_reason = CloseReason.STOP_LOSS
            return update

        if self.planner is not None and position.multi_level:
            update.executed_levels = self.planner.execute_due(position, price, now)
            if self.planner.all_executed(position):
                update.exit_reason = CloseReason.TAKE_PROFIT
        elif target_reached(price, position.take_profit, position.trade_type):
            update.exit_reason = CloseReason.TAKE_PROFIT
        return update

    def _promote_break_even(self, position: Position, price: float, update: PositionUpdate) -> None:
        if position.break_even_promoted:
            return
        progress = progress_to_target(position.entry_price, position.take_profit, price, position.trade_type)
        update.progress = progress
        if progress < self.settings.break_even_percent:
            return
        new_stop = offset_price(position.entry_price, position.trade_type, self.settings.break_even_buffer_percent)
        previous = position.stop_loss
        position.break_even_promoted = True
        # the stop only ever moves in the trade's favour
        if position.trade_type is TradeType.LONG:
            position.stop_loss = max(previous, new_stop)
        else:
            position.stop_loss = min(previous, new_stop)
        update.break_even_promoted = True
        update.previous_stop = previous
        update.new_stop = position.stop_loss
        logger.info(
            "%s: break-even at %.1f%% progress, stop %.8f -> %.8f",
            position.symbol, progress * 100, previous, position.stop_loss,
        )

    def close(self, symbol: str, price: float, reason: CloseReason, now: float) -> ClosedTrade:
        position = self.positions.get(symbol)
        if position is None:
            raise InvariantViolation(f"{symbol} has no open position to close")
        move = directional_move(position.entry_price, price, position.trade_type)

        if position.multi_level:
            if self.planner is None:
                self.planner = MultiLevelExitPlanner(self.settings)
            for level in position.exit_levels:
                if not level.executed:
                    self.planner.fill(position, level, price, now)
            exits = position.exit_levels
            gross = sum(level.profit_loss or 0.0 for level in exits)
            commission = sum(level.commission or 0.0 for level in position.levels)
            profit_loss = gross - commission
            profit_loss_percent = profit_loss / position.notional * 100
        else:
            commission = 0.0
            profit_loss = position.notional * move
            profit_loss_percent = move * 100

        trade = ClosedTrade.freeze(
            position,
            exit_price=price,
            exit_time=now,
            close_reason=reason,
            profit_loss=profit_loss,
            profit_loss_percent=profit_loss_percent,
            commission=commission,
        )
        del self.positions[symbol]
        self.ledger.append(trade)
        logger.info(
            "%s: closed %s by %s at %.8f, pnl %.2f%%",
            symbol, position.trade_type.value, reason.value, price, profit_loss_percent,
        )
        return trade

    def snapshot(self) -> List[Dict[str, Any]]:
        return [position.to_dict() for position in self.positions.values()]

    def restore(self, records: Iterable[Dict[str, Any]]) -> int:
        restored = 0
        for record in records:
            try:
                position = Position.from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid position record %r: %s", record, exc)
                continue
            if position.symbol in self.positions:
                logger.warning("Duplicate position record for %s ignored", position.symbol)
                continue
            self.positions[position.symbol] = position
            restored += 1
        return restored

    def ledger_snapshot(self) -> List[Dict[str, Any]]:
        return [trade.to_dict() for trade in self.ledger]

    def restore_ledger(self, records: Iterable[Dict[str, Any]]) -> int:
        restored = 0
        for record in records:
            try:
                self.ledger.append(ClosedTrade.from_dict(record))
                restored += 1
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid trade record %r: %s", record, exc)
        return restored
