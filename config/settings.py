"""Typed trading settings built from the raw YAML sections."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple

TIMEFRAME_SECONDS = {
    '1m': 60,
    '3m': 180,
    '5m': 300,
    '15m': 900,
    '30m': 1800,
    '1h': 3600,
    '2h': 7200,
    '4h': 14400,
    '1d': 86400,
}


class ConfigError(ValueError):
    """Raised when a configuration section is missing or inconsistent."""


def timeframe_to_seconds(timeframe: str) -> int:
    try:
        return TIMEFRAME_SECONDS[timeframe]
    except KeyError as exc:
        raise ConfigError(f"Unsupported timeframe '{timeframe}'") from exc


TRUE_STRINGS = ('1', 'true', 'yes', 'on')
FALSE_STRINGS = ('0', 'false', 'no', 'off', '')


def parse_bool(value: Any) -> bool:
    """YAML gives real booleans, but ``${ENV}`` placeholders expand to strings."""
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
        raise ConfigError(f"not a boolean: {value!r}")
    return bool(value)


@dataclass(frozen=True)
class LevelTarget:
    fraction: float
    target_percent: float


@dataclass(frozen=True)
class MultiLevelSettings:
    enabled: bool = False
    break_even_fraction: float = 0.2
    levels: Tuple[LevelTarget, ...] = (
        LevelTarget(fraction=0.4, target_percent=0.05),
        LevelTarget(fraction=0.4, target_percent=0.05),
    )

    @property
    def exit_fractions(self) -> Tuple[float, ...]:
        return (self.break_even_fraction,) + tuple(level.fraction for level in self.levels)

    @classmethod
    def from_config(cls, section: Optional[Mapping[str, Any]]) -> 'MultiLevelSettings':
        section = section or {}
        raw_levels = section.get('levels')
        if raw_levels is None:
            levels = cls.levels
        else:
            levels = tuple(
                LevelTarget(
                    fraction=float(item['fraction']),
                    target_percent=float(item['target_percent']),
                )
                for item in raw_levels
            )
        return cls(
            enabled=parse_bool(section.get('enabled', False)),
            break_even_fraction=float(section.get('break_even_fraction', cls.break_even_fraction)),
            levels=levels,
        )


@dataclass(frozen=True)
class TradingSettings:
    timeframe: str = '15m'
    volume_threshold: float = 8.0
    price_threshold: float = 0.005
    historical_window: int = 8
    consolidation_threshold: float = 0.015
    require_consolidation: bool = True
    entry_level_percent: float = 0.004
    cancel_level_percent: float = 0.006
    anomaly_cooldown: int = 4
    entry_confirmation_tfs: int = 6
    stop_loss_percent: float = 0.005
    take_profit_percent: float = 0.025
    break_even_percent: float = 0.2
    break_even_buffer_percent: float = 0.06
    notional: float = 1000.0
    commission_percent: float = 0.0003
    multi_level: MultiLevelSettings = field(default_factory=MultiLevelSettings)

    def __post_init__(self):
        self.validate()

    @property
    def interval_seconds(self) -> int:
        return timeframe_to_seconds(self.timeframe)

    @property
    def cooldown_seconds(self) -> int:
        return self.anomaly_cooldown * self.interval_seconds

    @property
    def confirmation_timeout_seconds(self) -> int:
        return self.entry_confirmation_tfs * self.interval_seconds

    def validate(self) -> None:
        timeframe_to_seconds(self.timeframe)
        if self.historical_window < 3:
            raise ConfigError("historical_window must be at least 3 candles")
        positive = {
            'volume_threshold': self.volume_threshold,
            'price_threshold': self.price_threshold,
            'consolidation_threshold': self.consolidation_threshold,
            'entry_level_percent': self.entry_level_percent,
            'cancel_level_percent': self.cancel_level_percent,
            'stop_loss_percent': self.stop_loss_percent,
            'take_profit_percent': self.take_profit_percent,
            'notional': self.notional,
        }
        for name, value in positive.items():
            if not value > 0:
                raise ConfigError(f"{name} must be positive (got {value})")
        # offsets of 100% or more put a price level at or below zero
        below_one = {
            'entry_level_percent': self.entry_level_percent,
            'cancel_level_percent': self.cancel_level_percent,
            'stop_loss_percent': self.stop_loss_percent,
            'take_profit_percent': self.take_profit_percent,
        }
        for name, value in below_one.items():
            if value >= 1:
                raise ConfigError(f"{name} must be below 1.0 (got {value})")
        if self.entry_confirmation_tfs <= 0 or self.anomaly_cooldown < 0:
            raise ConfigError("entry_confirmation_tfs must be positive and anomaly_cooldown non-negative")
        if not 0 <= self.break_even_percent <= 1:
            raise ConfigError("break_even_percent must be within [0, 1]")
        if self.break_even_buffer_percent < 0 or self.commission_percent < 0:
            raise ConfigError("break_even_buffer_percent and commission_percent must be non-negative")
        if self.multi_level.enabled:
            fractions = self.multi_level.exit_fractions
            if any(f <= 0 for f in fractions):
                raise ConfigError("multi-level fractions must be positive")
            if not math.isclose(sum(fractions), 1.0, abs_tol=1e-9):
                raise ConfigError(f"multi-level exit fractions must sum to 1.0 (got {sum(fractions)})")
            if any(not 0 < level.target_percent < 1 for level in self.multi_level.levels):
                raise ConfigError("multi-level target percents must be within (0, 1)")

    @classmethod
    def from_config(
        cls,
        trading: Optional[Mapping[str, Any]],
        multi_level: Optional[Mapping[str, Any]] = None,
    ) -> 'TradingSettings':
        trading = trading or {}
        kwargs = {}
        casts = {
            'timeframe': str,
            'volume_threshold': float,
            'price_threshold': float,
            'historical_window': int,
            'consolidation_threshold': float,
            'require_consolidation': parse_bool,
            'entry_level_percent': float,
            'cancel_level_percent': float,
            'anomaly_cooldown': int,
            'entry_confirmation_tfs': int,
            'stop_loss_percent': float,
            'take_profit_percent': float,
            'break_even_percent': float,
            'break_even_buffer_percent': float,
            'notional': float,
            'commission_percent': float,
        }
        for key, cast in casts.items():
            if key in trading and trading[key] is not None:
                try:
                    kwargs[key] = cast(trading[key])
                except (TypeError, ValueError) as exc:
                    raise ConfigError(f"Invalid value for trading.{key}: {trading[key]!r}") from exc
        kwargs['multi_level'] = MultiLevelSettings.from_config(multi_level)
        return cls(**kwargs)
