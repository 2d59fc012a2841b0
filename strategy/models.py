from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
import uuid


class InvariantViolation(ValueError):
    """A manager was asked to do something that would break its state contract."""


class TradeType(Enum):
    LONG = "Long"
    SHORT = "Short"

    @property
    def sign(self) -> int:
        return 1 if self is TradeType.LONG else -1


class WatchState(Enum):
    PENDING = "pending"
    CONSOLIDATING = "consolidating"
    ARMED = "armed"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    CONSOLIDATION_FAILED = "consolidation_failed"

    @property
    def terminal(self) -> bool:
        return self in (
            WatchState.CONFIRMED,
            WatchState.CANCELLED,
            WatchState.TIMED_OUT,
            WatchState.CONSOLIDATION_FAILED,
        )


class PositionStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


class CloseReason(Enum):
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"


class LeadOutcome(Enum):
    CONVERTED = "converted"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    CONSOLIDATION_FAILURE = "consolidation_failure"


class EventKind(Enum):
    ANOMALY_WATCHLISTED = "anomaly_watchlisted"
    WATCHLIST_REMOVED = "watchlist_removed"
    POSITION_OPENED = "position_opened"
    LEVEL_EXECUTED = "level_executed"
    POSITION_CLOSED = "position_closed"
    BREAK_EVEN_PROMOTED = "break_even_promoted"
    EXISTING_POSITIONS = "existing_positions"


def _require_positive(name: str, value: float) -> None:
    if value is None or not value > 0:
        raise InvariantViolation(f"{name} must be strictly positive (got {value!r})")


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass(frozen=True)
class Candle:
    open_time: float
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: float
    closed: bool = True

    @property
    def average_price(self) -> float:
        return (self.open + self.close) / 2

    @classmethod
    def from_rest_row(cls, row: Sequence[Any], now_ms: int) -> 'Candle':
        """Parse a ``/api/v3/klines`` row; the candle counts as closed once its close time has passed."""
        close_time_ms = int(row[6])
        return cls(
            open_time=int(row[0]) / 1000.0,
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            close_time=close_time_ms / 1000.0,
            closed=close_time_ms < now_ms,
        )

    @classmethod
    def from_stream_payload(cls, k: Dict[str, Any]) -> 'Candle':
        return cls(
            open_time=int(k['t']) / 1000.0,
            open=float(k['o']),
            high=float(k['h']),
            low=float(k['l']),
            close=float(k['c']),
            volume=float(k['v']),
            close_time=int(k['T']) / 1000.0,
            closed=bool(k.get('x', False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'open_time': self.open_time,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
            'close_time': self.close_time,
            'closed': self.closed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Candle':
        return cls(
            open_time=float(data['open_time']),
            open=float(data['open']),
            high=float(data['high']),
            low=float(data['low']),
            close=float(data['close']),
            volume=float(data['volume']),
            close_time=float(data['close_time']),
            closed=bool(data.get('closed', True)),
        )


@dataclass
class PendingAnomaly:
    symbol: str
    trade_type: TradeType
    anomaly_price: float
    historical_price: float
    anomaly_close: float
    anomaly_high: float
    anomaly_low: float
    anomaly_time: float
    volume_leverage: float
    anomaly_volume: float
    historical_volume: float
    watchlist_entered_at: Optional[float] = None
    entry_level: Optional[float] = None
    cancel_level: Optional[float] = None
    is_consolidated: bool = False
    state: WatchState = WatchState.PENDING
    last_observed_price: Optional[float] = None
    last_observed_at: Optional[float] = None
    anomaly_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        _require_positive('anomaly_price', self.anomaly_price)
        _require_positive('historical_price', self.historical_price)
        _require_positive('anomaly_close', self.anomaly_close)
        if self.entry_level is not None:
            _require_positive('entry_level', self.entry_level)
        if self.cancel_level is not None:
            _require_positive('cancel_level', self.cancel_level)

    @property
    def price_deviation(self) -> float:
        return (self.anomaly_price - self.historical_price) / self.historical_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            'anomaly_id': self.anomaly_id,
            'symbol': self.symbol,
            'trade_type': self.trade_type.value,
            'anomaly_price': self.anomaly_price,
            'historical_price': self.historical_price,
            'anomaly_close': self.anomaly_close,
            'anomaly_high': self.anomaly_high,
            'anomaly_low': self.anomaly_low,
            'anomaly_time': self.anomaly_time,
            'volume_leverage': self.volume_leverage,
            'anomaly_volume': self.anomaly_volume,
            'historical_volume': self.historical_volume,
            'watchlist_entered_at': self.watchlist_entered_at,
            'entry_level': self.entry_level,
            'cancel_level': self.cancel_level,
            'is_consolidated': self.is_consolidated,
            'state': self.state.value,
            'last_observed_price': self.last_observed_price,
            'last_observed_at': self.last_observed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingAnomaly':
        return cls(
            anomaly_id=str(data['anomaly_id']),
            symbol=str(data['symbol']),
            trade_type=TradeType(data['trade_type']),
            anomaly_price=float(data['anomaly_price']),
            historical_price=float(data['historical_price']),
            anomaly_close=float(data['anomaly_close']),
            anomaly_high=float(data['anomaly_high']),
            anomaly_low=float(data['anomaly_low']),
            anomaly_time=float(data['anomaly_time']),
            volume_leverage=float(data['volume_leverage']),
            anomaly_volume=float(data['anomaly_volume']),
            historical_volume=float(data['historical_volume']),
            watchlist_entered_at=_optional_float(data.get('watchlist_entered_at')),
            entry_level=_optional_float(data.get('entry_level')),
            cancel_level=_optional_float(data.get('cancel_level')),
            is_consolidated=bool(data.get('is_consolidated', False)),
            state=WatchState(data.get('state', WatchState.PENDING.value)),
            last_observed_price=_optional_float(data.get('last_observed_price')),
            last_observed_at=_optional_float(data.get('last_observed_at')),
        )


@dataclass
class TradeLevel:
    level_number: int
    volume_fraction: float
    target_price: float
    executed: bool = False
    execution_price: Optional[float] = None
    executed_at: Optional[float] = None
    profit_loss: Optional[float] = None
    profit_loss_percent: Optional[float] = None
    commission: Optional[float] = None

    def __post_init__(self):
        _require_positive('target_price', self.target_price)
        _require_positive('volume_fraction', self.volume_fraction)

    def execute(self, price: float, now: float, profit_loss: float,
                profit_loss_percent: float, commission: float) -> None:
        if self.executed:
            raise InvariantViolation(f"Level {self.level_number} already executed")
        self.executed = True
        self.execution_price = price
        self.executed_at = now
        self.profit_loss = profit_loss
        self.profit_loss_percent = profit_loss_percent
        self.commission = commission

    def to_dict(self) -> Dict[str, Any]:
        return {
            'level_number': self.level_number,
            'volume_fraction': self.volume_fraction,
            'target_price': self.target_price,
            'executed': self.executed,
            'execution_price': self.execution_price,
            'executed_at': self.executed_at,
            'profit_loss': self.profit_loss,
            'profit_loss_percent': self.profit_loss_percent,
            'commission': self.commission,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TradeLevel':
        return cls(
            level_number=int(data['level_number']),
            volume_fraction=float(data['volume_fraction']),
            target_price=float(data['target_price']),
            executed=bool(data.get('executed', False)),
            execution_price=_optional_float(data.get('execution_price')),
            executed_at=_optional_float(data.get('executed_at')),
            profit_loss=_optional_float(data.get('profit_loss')),
            profit_loss_percent=_optional_float(data.get('profit_loss_percent')),
            commission=_optional_float(data.get('commission')),
        )


@dataclass
class PositionRequest:
    symbol: str
    trade_type: TradeType
    entry_price: float
    anomaly_id: str
    volume_leverage: float
    entry_level: Optional[float] = None
    cancel_level: Optional[float] = None

    def __post_init__(self):
        _require_positive('entry_price', self.entry_price)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'trade_type': self.trade_type.value,
            'entry_price': self.entry_price,
            'anomaly_id': self.anomaly_id,
            'volume_leverage': self.volume_leverage,
            'entry_level': self.entry_level,
            'cancel_level': self.cancel_level,
        }


@dataclass
class Position:
    symbol: str
    trade_type: TradeType
    entry_price: float
    entry_time: float
    stop_loss: float
    take_profit: float
    notional: float
    position_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    anomaly_id: Optional[str] = None
    volume_leverage: Optional[float] = None
    status: PositionStatus = PositionStatus.OPEN
    break_even_promoted: bool = False
    levels: List[TradeLevel] = field(default_factory=list)
    last_price: Optional[float] = None
    last_updated_at: Optional[float] = None

    def __post_init__(self):
        _require_positive('entry_price', self.entry_price)
        _require_positive('stop_loss', self.stop_loss)
        _require_positive('take_profit', self.take_profit)
        _require_positive('notional', self.notional)
        if self.trade_type is TradeType.LONG:
            take_valid = self.entry_price < self.take_profit
            stop_valid = self.stop_loss < self.entry_price
        else:
            take_valid = self.take_profit < self.entry_price
            stop_valid = self.entry_price < self.stop_loss
        if not take_valid:
            raise InvariantViolation(
                f"{self.symbol}: take {self.take_profit} on wrong side "
                f"of entry {self.entry_price} for {self.trade_type.value}"
            )
        # a promoted stop sits on the profit side of entry
        if not stop_valid and not self.break_even_promoted:
            raise InvariantViolation(
                f"{self.symbol}: stop {self.stop_loss} on wrong side "
                f"of entry {self.entry_price} for {self.trade_type.value}"
            )
        if self.levels:
            numbers = [level.level_number for level in self.levels]
            if numbers != sorted(numbers) or len(set(numbers)) != len(numbers):
                raise InvariantViolation(f"{self.symbol}: trade levels must be strictly ordered")

    @property
    def multi_level(self) -> bool:
        return bool(self.levels)

    @property
    def exit_levels(self) -> List[TradeLevel]:
        return [level for level in self.levels if level.level_number > 1]

    @property
    def remaining_fraction(self) -> float:
        return sum(level.volume_fraction for level in self.exit_levels if not level.executed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'position_id': self.position_id,
            'symbol': self.symbol,
            'trade_type': self.trade_type.value,
            'entry_price': self.entry_price,
            'entry_time': self.entry_time,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'notional': self.notional,
            'anomaly_id': self.anomaly_id,
            'volume_leverage': self.volume_leverage,
            'status': self.status.value,
            'break_even_promoted': self.break_even_promoted,
            'levels': [level.to_dict() for level in self.levels],
            'last_price': self.last_price,
            'last_updated_at': self.last_updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Position':
        return cls(
            position_id=str(data['position_id']),
            symbol=str(data['symbol']),
            trade_type=TradeType(data['trade_type']),
            entry_price=float(data['entry_price']),
            entry_time=float(data['entry_time']),
            stop_loss=float(data['stop_loss']),
            take_profit=float(data['take_profit']),
            notional=float(data['notional']),
            anomaly_id=data.get('anomaly_id'),
            volume_leverage=_optional_float(data.get('volume_leverage')),
            status=PositionStatus(data.get('status', PositionStatus.OPEN.value)),
            break_even_promoted=bool(data.get('break_even_promoted', False)),
            levels=[TradeLevel.from_dict(item) for item in data.get('levels') or []],
            last_price=_optional_float(data.get('last_price')),
            last_updated_at=_optional_float(data.get('last_updated_at')),
        )


@dataclass(frozen=True)
class ClosedTrade:
    position: Position
    exit_price: float
    exit_time: float
    close_reason: CloseReason
    profit_loss: float
    profit_loss_percent: float
    commission: float = 0.0

    @classmethod
    def freeze(cls, position: Position, **kwargs) -> 'ClosedTrade':
        frozen = replace(
            position,
            status=PositionStatus.CLOSED,
            levels=[replace(level) for level in position.levels],
        )
        return cls(position=frozen, **kwargs)

    @property
    def symbol(self) -> str:
        return self.position.symbol

    @property
    def trade_type(self) -> TradeType:
        return self.position.trade_type

    @property
    def duration(self) -> float:
        return self.exit_time - self.position.entry_time

    @property
    def levels_executed(self) -> int:
        return sum(1 for level in self.position.exit_levels if level.executed)

    def to_dict(self) -> Dict[str, Any]:
        data = self.position.to_dict()
        data.update({
            'exit_price': self.exit_price,
            'exit_time': self.exit_time,
            'close_reason': self.close_reason.value,
            'profit_loss': self.profit_loss,
            'profit_loss_percent': self.profit_loss_percent,
            'commission': self.commission,
            'duration': self.duration,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClosedTrade':
        position = Position.from_dict(data)
        return cls(
            position=position,
            exit_price=float(data['exit_price']),
            exit_time=float(data['exit_time']),
            close_reason=CloseReason(data['close_reason']),
            profit_loss=float(data['profit_loss']),
            profit_loss_percent=float(data['profit_loss_percent']),
            commission=float(data.get('commission', 0.0)),
        )


@dataclass(frozen=True)
class LeadRecord:
    symbol: str
    trade_type: TradeType
    anomaly_id: str
    outcome: LeadOutcome
    entered_at: float
    resolved_at: float
    volume_leverage: float
    resolution_price: Optional[float] = None

    @property
    def converted(self) -> bool:
        return self.outcome is LeadOutcome.CONVERTED

    @property
    def lifetime_minutes(self) -> float:
        return (self.resolved_at - self.entered_at) / 60.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'trade_type': self.trade_type.value,
            'anomaly_id': self.anomaly_id,
            'outcome': self.outcome.value,
            'converted': self.converted,
            'entered_at': self.entered_at,
            'resolved_at': self.resolved_at,
            'volume_leverage': self.volume_leverage,
            'resolution_price': self.resolution_price,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LeadRecord':
        return cls(
            symbol=str(data['symbol']),
            trade_type=TradeType(data['trade_type']),
            anomaly_id=str(data['anomaly_id']),
            outcome=LeadOutcome(data['outcome']),
            entered_at=float(data['entered_at']),
            resolved_at=float(data['resolved_at']),
            volume_leverage=float(data['volume_leverage']),
            resolution_price=_optional_float(data.get('resolution_price')),
        )


@dataclass
class EngineEvent:
    kind: EventKind
    symbol: Optional[str]
    timestamp: float
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'symbol': self.symbol,
            'timestamp': self.timestamp,
            'payload': self.payload,
        }
