import asyncio
import logging
import time
from typing import List, Optional

import aiohttp

from config import config
from config.settings import parse_bool
from strategy.models import Candle
from .binance_rest import BinanceAPIError, BinanceRESTClient


logger = logging.getLogger(__name__)


class RESTPoller:
    """Slow-path historical candle fetcher with bounded retries."""

    def __init__(self, client: Optional[BinanceRESTClient] = None, timeframe: Optional[str] = None,
                 max_attempts: Optional[int] = None, backoff_s: Optional[float] = None,
                 exponential_backoff: Optional[bool] = None, metrics=None,
                 sleep=asyncio.sleep, clock=time.time):
        rest_cfg = config.get('rest') or {}
        trading_cfg = config.get('trading') or {}
        self.timeframe = timeframe or trading_cfg.get('timeframe', '15m')
        self.max_attempts = max(1, int(max_attempts if max_attempts is not None else rest_cfg.get('max_attempts', 3)))
        self.backoff_s = float(backoff_s if backoff_s is not None else rest_cfg.get('backoff_s', 2.0))
        self.exponential_backoff = parse_bool(
            exponential_backoff if exponential_backoff is not None else rest_cfg.get('exponential_backoff', False)
        )
        self._rest = client or BinanceRESTClient(timeout_s=float(rest_cfg.get('request_timeout_s', 15)))
        self.metrics = metrics
        self.fail_count = 0
        self._sleep = sleep
        self._clock = clock

    def _delay(self, attempt: int) -> float:
        if self.exponential_backoff:
            return self.backoff_s * (2 ** (attempt - 1))
        return self.backoff_s

    def _record_failure(self, kind: str):
        self.fail_count += 1
        if self.metrics is not None:
            self.metrics.record_fetch_failure(kind)

    async def fetch_historical_candles(self, symbol: str, since: Optional[float] = None,
                                       limit: Optional[int] = None) -> List[Candle]:
        start_ms = int(since * 1000) if since is not None else None
        for attempt in range(1, self.max_attempts + 1):
            try:
                rows = await self._rest.get_klines(symbol, self.timeframe, start_time_ms=start_ms, limit=limit)
                now_ms = int(self._clock() * 1000)
                return [Candle.from_rest_row(row, now_ms) for row in rows]
            except BinanceAPIError as exc:
                if exc.symbol_not_found:
                    logger.warning("%s: not tradeable on exchange (%s), skipping", symbol, exc)
                    self._record_failure('not_found')
                    return []
                if not exc.transient:
                    logger.warning("%s: candle fetch rejected: %s", symbol, exc)
                    self._record_failure('rejected')
                    return []
                error = exc
            except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
                error = exc
            except (IndexError, TypeError, ValueError) as exc:
                logger.warning("%s: malformed kline payload: %s", symbol, exc)
                self._record_failure('malformed')
                return []

            self._record_failure('transient')
            if attempt >= self.max_attempts:
                logger.error(
                    "%s: candle fetch failed after %s attempts: %s", symbol, attempt, error or 'timeout'
                )
                return []
            delay = self._delay(attempt)
            logger.warning(
                "%s: candle fetch failed (%s/%s): %s; retrying in %.1fs",
                symbol, attempt, self.max_attempts, error or 'timeout', delay,
            )
            await self._sleep(delay)
        return []

    async def close(self):
        await self._rest.close()
