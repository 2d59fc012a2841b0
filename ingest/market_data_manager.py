import logging
from typing import Dict, List, Optional

from ingest.rest_poller import RESTPoller
from ingest.source import CandleCallback, CandleSource
from ingest.websocket_client import KlineStreamClient
from strategy.models import Candle

logger = logging.getLogger(__name__)


class MarketDataManager(CandleSource):
    """Historical batches over REST, live klines over the websocket, routed to per-symbol callbacks."""

    def __init__(self, ws_client: KlineStreamClient, rest_poller: RESTPoller):
        self.ws_client = ws_client
        self.rest_poller = rest_poller
        self._callbacks: Dict[str, CandleCallback] = {}
        self.ws_client.register_handler('kline', self._dispatch)

    async def fetch_historical_candles(self, symbol: str, since: Optional[float] = None,
                                       limit: Optional[int] = None) -> List[Candle]:
        return await self.rest_poller.fetch_historical_candles(symbol, since=since, limit=limit)

    async def subscribe(self, symbol: str, callback: CandleCallback) -> None:
        symbol = symbol.upper()
        self._callbacks[symbol] = callback
        await self.ws_client.subscribe(symbol)

    async def unsubscribe(self, symbol: str) -> None:
        symbol = symbol.upper()
        await self.ws_client.unsubscribe(symbol)
        self._callbacks.pop(symbol, None)

    def subscribed(self) -> List[str]:
        return sorted(self._callbacks)

    async def _dispatch(self, symbol: str, candle: Candle):
        handler = self._callbacks.get(symbol)
        if not handler:
            return
        try:
            await handler(symbol, candle)
        except Exception:
            logger.exception("Kline handler for %s failed", symbol)

    async def start(self):
        await self.ws_client.start()

    async def stop(self):
        await self.ws_client.stop()
        await self.rest_poller.close()
