import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ingest.source import CandleCallback, CandleSource
from strategy.models import Candle

logger = logging.getLogger(__name__)


@dataclass
class ReplayEvent:
    ts: float
    type: str  # 'candles' | 'kline' | 'sweep'
    payload: Dict[str, Any]


class ReplayClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def advance_to(self, ts: float) -> None:
        # recorded data may interleave slightly out of order; time never runs backwards
        if ts > self.now:
            self.now = ts

    def __call__(self) -> float:
        return self.now


class ReplaySource(CandleSource):
    """Serves recorded candle batches and remembers fast-path subscriptions."""

    def __init__(self):
        self.batches: Dict[str, List[Candle]] = {}
        self.callbacks: Dict[str, CandleCallback] = {}
        self.unsubscribed: List[str] = []

    def load_batch(self, symbol: str, candles: List[Candle]) -> None:
        self.batches[symbol] = list(candles)

    async def fetch_historical_candles(self, symbol: str, since: Optional[float] = None,
                                       limit: Optional[int] = None) -> List[Candle]:
        candles = self.batches.get(symbol, [])
        if since is not None:
            candles = [c for c in candles if c.open_time >= since]
        if limit is not None:
            candles = candles[-limit:]
        return list(candles)

    async def subscribe(self, symbol: str, callback: CandleCallback) -> None:
        self.callbacks[symbol] = callback

    async def unsubscribe(self, symbol: str) -> None:
        if self.callbacks.pop(symbol, None) is not None:
            self.unsubscribed.append(symbol)

    async def push(self, symbol: str, candle: Candle) -> bool:
        callback = self.callbacks.get(symbol)
        if callback is None:
            return False
        await callback(symbol, candle)
        return True


class ReplaySimulator:
    def __init__(self, engine, source: ReplaySource, clock: ReplayClock):
        self.engine = engine
        self.source = source
        self.clock = clock
        self._events: List[ReplayEvent] = []

    def load_from_list(self, events: List[Dict[str, Any]]):
        parsed: List[ReplayEvent] = []
        for ev in events:
            parsed.append(ReplayEvent(ts=float(ev["ts"]), type=ev["type"], payload=ev.get("payload") or {}))
        parsed.sort(key=lambda e: e.ts)
        self._events = parsed

    def load_from_file(self, path: str):
        """Load events from a JSON list or a JSONL file."""
        text = Path(path).read_text(encoding='utf-8')
        stripped = text.lstrip()
        if stripped.startswith('['):
            events = json.loads(text)
        else:
            events = [json.loads(line) for line in text.splitlines() if line.strip()]
        self.load_from_list(events)

    async def replay(self, realtime: bool = False, initialize: bool = True) -> Dict[str, int]:
        counts = {'candles': 0, 'kline': 0, 'delivered': 0, 'sweep': 0}
        if not self._events:
            return counts
        if initialize:
            await self.engine.initialize()
        self.engine.running = True

        t0 = self._events[0].ts
        loop = asyncio.get_running_loop()
        loop0 = loop.time()

        for ev in self._events:
            if realtime:
                sleep_s = (ev.ts - t0) - (loop.time() - loop0)
                if sleep_s > 0:
                    await asyncio.sleep(sleep_s)
            self.clock.advance_to(ev.ts)

            if ev.type == "candles":
                symbol = ev.payload["symbol"]
                self.source.load_batch(symbol, [Candle.from_dict(c) for c in ev.payload["candles"]])
                await self.engine.scan_symbol(symbol)
                counts['candles'] += 1
            elif ev.type == "kline":
                symbol = ev.payload["symbol"]
                candle = Candle.from_dict(ev.payload["candle"])
                if await self.source.push(symbol, candle):
                    counts['delivered'] += 1
                counts['kline'] += 1
            elif ev.type == "sweep":
                await self.engine.sweep_expired()
                counts['sweep'] += 1
            else:
                logger.warning("Unknown replay event type %s", ev.type)

        await self.engine.sweep_expired()
        if self.engine.notifier is not None:
            await self.engine.notifier.drain()
        self.engine.running = False
        return counts
