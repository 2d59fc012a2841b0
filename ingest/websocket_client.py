import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from config import config
from strategy.models import Candle


logger = logging.getLogger(__name__)

KlineHandler = Callable[[str, Candle], Awaitable[None]]


class ReconnectLimitExceeded(ConnectionError):
    pass


class KlineStreamClient:
    """One combined kline websocket; symbols are added and removed with control messages."""

    def __init__(self, url: Optional[str] = None, timeframe: Optional[str] = None,
                 heartbeat_interval_s: Optional[float] = None, heartbeat_timeout_s: Optional[float] = None,
                 reconnect_base_delay_s: Optional[float] = None, max_reconnect_attempts: Optional[int] = None,
                 metrics=None, connect=None):
        ws_cfg = config.get('websocket') or {}
        exchange_cfg = config.get('exchange') or {}
        trading_cfg = config.get('trading') or {}
        self.url = url or exchange_cfg.get('websocket_url', 'wss://data-stream.binance.vision/ws')
        self.timeframe = timeframe or trading_cfg.get('timeframe', '15m')
        self.heartbeat_interval = float(
            heartbeat_interval_s if heartbeat_interval_s is not None else ws_cfg.get('heartbeat_interval_s', 30)
        )
        self.heartbeat_timeout = float(
            heartbeat_timeout_s if heartbeat_timeout_s is not None else ws_cfg.get('heartbeat_timeout_s', 60)
        )
        self.reconnect_base_delay = float(
            reconnect_base_delay_s if reconnect_base_delay_s is not None
            else ws_cfg.get('reconnect_base_delay_s', 1.0)
        )
        self.max_reconnect_attempts = int(
            max_reconnect_attempts if max_reconnect_attempts is not None
            else ws_cfg.get('max_reconnect_attempts', 5)
        )
        self.metrics = metrics
        self._connect = connect or websockets.connect

        self.handlers: Dict[str, Callable] = {}
        self.active: Set[str] = set()
        self.running = False
        self.connected = False
        self.reconnect_attempts = 0
        self._ws = None
        self._request_id = 0
        self._ping_task: Optional[asyncio.Task] = None

    def register_handler(self, event: str, handler: Callable):
        self.handlers[event] = handler

    def stream_name(self, symbol: str) -> str:
        return f"{symbol.lower()}@kline_{self.timeframe}"

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _send_control(self, method: str, symbols: Iterable[str]) -> None:
        params = [self.stream_name(symbol) for symbol in symbols]
        if not params or self._ws is None or not self.connected:
            return
        message = {'method': method, 'params': params, 'id': self._next_id()}
        try:
            await self._ws.send(json.dumps(message))
        except (ConnectionClosed, WebSocketException, OSError) as exc:
            # resubscription on reconnect covers the active set
            logger.warning("%s %s not sent: %s", method, params, exc)

    async def subscribe(self, symbol: str) -> None:
        symbol = symbol.upper()
        if symbol in self.active:
            return
        self.active.add(symbol)
        await self._send_control('SUBSCRIBE', [symbol])
        logger.debug("Subscribed %s", self.stream_name(symbol))

    async def unsubscribe(self, symbol: str) -> None:
        symbol = symbol.upper()
        if symbol not in self.active:
            return
        # dropped from the active set first so in-flight messages are ignored
        self.active.discard(symbol)
        await self._send_control('UNSUBSCRIBE', [symbol])
        logger.debug("Unsubscribed %s", self.stream_name(symbol))

    async def resubscribe_all(self) -> None:
        if self.active:
            logger.info("Re-subscribing %d kline streams", len(self.active))
            await self._send_control('SUBSCRIBE', sorted(self.active))

    async def handle_message(self, raw) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Dropping non-JSON stream message")
            return
        if not isinstance(data, dict) or ('result' in data and 'id' in data):
            return
        event = data.get('data') if 'data' in data else data
        if not isinstance(event, dict) or event.get('e') != 'kline':
            return
        kline = event.get('k') or {}
        symbol = str(event.get('s') or kline.get('s') or '').upper()
        if symbol not in self.active:
            logger.debug("Dropping kline for unsubscribed %s", symbol)
            return
        try:
            candle = Candle.from_stream_payload(kline)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed kline for %s: %s", symbol, exc)
            return
        handler = self.handlers.get('kline')
        if handler:
            await handler(symbol, candle)

    def reconnect_delay(self, attempt: int) -> float:
        return self.reconnect_base_delay * (2 ** (attempt - 1))

    async def _handle_reconnect(self) -> bool:
        self.reconnect_attempts += 1
        if self.metrics is not None:
            self.metrics.record_reconnect()
        if self.reconnect_attempts > self.max_reconnect_attempts:
            logger.error("Kline stream gave up after %s reconnect attempts", self.max_reconnect_attempts)
            if 'reconnect_limit' in self.handlers:
                await self.handlers['reconnect_limit'](self.reconnect_attempts)
            return False
        delay = self.reconnect_delay(self.reconnect_attempts)
        logger.info("Reconnecting kline stream in %.1fs (attempt %s/%s)",
                    delay, self.reconnect_attempts, self.max_reconnect_attempts)
        await asyncio.sleep(delay)
        return True

    async def _heartbeat(self, ws) -> None:
        while self.running:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=self.heartbeat_timeout)
            except asyncio.TimeoutError:
                logger.warning("No pong within %.0fs; forcing reconnect", self.heartbeat_timeout)
                await ws.close()
                return
            except ConnectionClosed:
                return

    async def _run_connection(self, ws) -> None:
        self._ws = ws
        self.connected = True
        self.reconnect_attempts = 0
        logger.info("Kline stream connected to %s", self.url)
        await self.resubscribe_all()
        self._ping_task = asyncio.create_task(self._heartbeat(ws))
        try:
            async for raw in ws:
                if not self.running:
                    break
                await self.handle_message(raw)
        finally:
            self.connected = False
            self._ws = None
            if self._ping_task:
                self._ping_task.cancel()
                await asyncio.gather(self._ping_task, return_exceptions=True)
                self._ping_task = None

    async def start(self):
        self.running = True
        while self.running:
            try:
                async with self._connect(self.url, ping_interval=None) as ws:
                    await self._run_connection(ws)
                if not self.running:
                    break
                logger.warning("Kline stream closed by server")
            except asyncio.CancelledError:
                break
            except (ConnectionClosed, WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.error("Kline stream error: %s", e)
            if not self.running:
                break
            if not await self._handle_reconnect():
                self.running = False
                raise ReconnectLimitExceeded(f"kline stream exceeded {self.max_reconnect_attempts} reconnects")

    async def stop(self):
        self.running = False
        ws = self._ws
        if ws is not None:
            await ws.close()

    def active_symbols(self) -> List[str]:
        return sorted(self.active)
