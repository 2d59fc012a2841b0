from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional

from strategy.models import Candle

CandleCallback = Callable[[str, Candle], Awaitable[None]]


class CandleSource(ABC):
    """Market data as the engine consumes it: historical batches plus per-symbol pushes."""

    @abstractmethod
    async def fetch_historical_candles(self, symbol: str, since: Optional[float] = None,
                                       limit: Optional[int] = None) -> List[Candle]:
        pass

    @abstractmethod
    async def subscribe(self, symbol: str, callback: CandleCallback) -> None:
        pass

    @abstractmethod
    async def unsubscribe(self, symbol: str) -> None:
        pass

    async def start(self) -> None:
        return

    async def stop(self) -> None:
        return
