import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from config import config

logger = logging.getLogger(__name__)

SPOT_BASE_URL = "https://api.binance.com"
KLINES_PATH = "/api/v3/klines"
INVALID_SYMBOL_CODE = -1121
USED_WEIGHT_HEADER = "X-MBX-USED-WEIGHT-1M"
# spot request weight budget per minute
WEIGHT_LIMIT = 6000


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        super().__init__(f"Binance API error (status={status}, code={code}, msg={msg})")

    @property
    def symbol_not_found(self) -> bool:
        return self.status == 404 or (self.status == 400 and self.code == INVALID_SYMBOL_CODE)

    @property
    def transient(self) -> bool:
        return self.status in (418, 429) or self.status >= 500


def _decode(text: str, content_type: str) -> Any:
    if "application/json" not in content_type:
        return text
    try:
        return json.loads(text)
    except ValueError:
        return text


class BinanceRESTClient:
    """Unauthenticated spot market-data client; one shared aiohttp session."""

    def __init__(self, base_url: Optional[str] = None, timeout_s: float = 15):
        exchange = config.get('exchange') or {}
        self.base_url = (base_url or exchange.get('rest_base_url') or SPOT_BASE_URL).rstrip("/")
        api_key = exchange.get("api_key")
        # unresolved ${VAR} placeholders mean no key
        self.api_key: Optional[str] = api_key if api_key and not str(api_key).startswith('${') else None
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.used_weight: Optional[int] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                headers = {"X-MBX-APIKEY": self.api_key} if self.api_key else None
                self._session = aiohttp.ClientSession(headers=headers, timeout=self.timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
            self._session = None

    def _track_weight(self, headers) -> None:
        raw = headers.get(USED_WEIGHT_HEADER)
        if raw is None:
            return
        try:
            self.used_weight = int(raw)
        except ValueError:
            return
        if self.used_weight > WEIGHT_LIMIT * 0.8:
            logger.warning("Binance request weight at %d/%d this minute", self.used_weight, WEIGHT_LIMIT)

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        session = await self._get_session()
        async with session.get(f"{self.base_url}{path}", params=dict(params or {})) as resp:
            text = await resp.text()
            self._track_weight(resp.headers)
            payload = _decode(text, resp.headers.get("Content-Type", ""))
            if resp.status >= 400:
                body = payload if isinstance(payload, dict) else {}
                raise BinanceAPIError(resp.status, body.get("code"), body.get("msg"), text)
            return payload

    async def get_klines(
        self,
        symbol: str,
        interval: str,
        start_time_ms: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[List[Any]]:
        params: Dict[str, Any] = {"symbol": symbol, "interval": interval}
        if start_time_ms is not None:
            params["startTime"] = int(start_time_ms)
        if limit is not None:
            params["limit"] = int(limit)
        payload = await self.get(KLINES_PATH, params=params)
        if not isinstance(payload, list):
            raise BinanceAPIError(200, None, "unexpected klines payload", str(payload))
        return payload
