import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from config.settings import TradingSettings
from .models import Candle, PendingAnomaly, TradeType
from .pricing import relative_deviation

logger = logging.getLogger(__name__)


class CooldownTracker:
    """Remembers when each symbol last tripped the volume check."""

    def __init__(self, duration_s: float):
        self.duration_s = duration_s
        self._last_check: Dict[str, float] = {}

    def mark(self, symbol: str, now: float) -> None:
        self._last_check[symbol] = now

    def is_cooling(self, symbol: str, now: float) -> bool:
        last = self._last_check.get(symbol)
        if last is None:
            return False
        if now - last < self.duration_s:
            return True
        self._last_check.pop(symbol, None)
        return False

    def expires_at(self, symbol: str) -> Optional[float]:
        last = self._last_check.get(symbol)
        return None if last is None else last + self.duration_s

    def prune(self, now: float) -> int:
        expired = [s for s, ts in self._last_check.items() if now - ts >= self.duration_s]
        for symbol in expired:
            del self._last_check[symbol]
        return len(expired)

    def active(self, now: float) -> List[str]:
        return [s for s, ts in self._last_check.items() if now - ts < self.duration_s]


class AnomalyDetector:
    def __init__(self, settings: TradingSettings, cooldowns: Optional[CooldownTracker] = None):
        self.settings = settings
        self.cooldowns = cooldowns or CooldownTracker(settings.cooldown_seconds)

    def split_window(self, candles: Sequence[Candle]):
        window = list(candles[-self.settings.historical_window:])
        return window[:-2], window[-2]

    def detect(self, symbol: str, candles: Sequence[Candle], now: float,
               tracked: bool = False) -> Optional[PendingAnomaly]:
        if tracked:
            return None
        if len(candles) < self.settings.historical_window:
            logger.debug("%s: only %d candles, need %d", symbol, len(candles), self.settings.historical_window)
            return None
        if self.cooldowns.is_cooling(symbol, now):
            logger.debug("%s: cooling down until %s", symbol, self.cooldowns.expires_at(symbol))
            return None

        historical, anomaly_candle = self.split_window(candles)
        if not anomaly_candle.closed or not all(c.closed for c in historical):
            logger.debug("%s: window contains unclosed candles", symbol)
            return None

        historical_volume = float(np.mean([c.volume for c in historical]))
        historical_price = float(np.mean([c.average_price for c in historical]))
        if historical_volume <= 0 or historical_price <= 0:
            return None

        if not anomaly_candle.volume > historical_volume * self.settings.volume_threshold:
            return None

        self.cooldowns.mark(symbol, now)
        deviation = relative_deviation(anomaly_candle.average_price, historical_price)
        if deviation > self.settings.price_threshold:
            trade_type = TradeType.SHORT
        elif deviation < -self.settings.price_threshold:
            trade_type = TradeType.LONG
        else:
            logger.info(
                "%s: volume spike x%.2f without price displacement (%.4f), cooling down",
                symbol, anomaly_candle.volume / historical_volume, deviation,
            )
            return None

        leverage = anomaly_candle.volume / historical_volume
        logger.info(
            "%s: volume anomaly x%.2f, deviation %.4f -> %s",
            symbol, leverage, deviation, trade_type.value,
        )
        return PendingAnomaly(
            symbol=symbol,
            trade_type=trade_type,
            anomaly_price=anomaly_candle.average_price,
            historical_price=historical_price,
            anomaly_close=anomaly_candle.close,
            anomaly_high=anomaly_candle.high,
            anomaly_low=anomaly_candle.low,
            anomaly_time=anomaly_candle.open_time,
            volume_leverage=leverage,
            anomaly_volume=anomaly_candle.volume,
            historical_volume=historical_volume,
        )
