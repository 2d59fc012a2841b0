import json
import logging
from pathlib import Path
from typing import Any, Iterable, List

logger = logging.getLogger(__name__)

def normalize_symbol(raw: str, quote: str = 'USDT') -> str:
    """``btc/usdt``, ``BTC-USDT`` and ``BTC`` all become ``BTCUSDT``.

    Without a separator only the requested ``quote`` marks a full pair, so
    bare bases such as ``STETH`` still get the quote appended.
    """
    text = str(raw).strip().upper()
    quote = quote.upper()
    for sep in ('/', '-', '_'):
        if sep in text:
            base, _, rest = text.partition(sep)
            return f"{base}{rest}"
    if text.endswith(quote) and len(text) > len(quote):
        return text
    return f"{text}{quote}"


def _entries(data: Any) -> Iterable:
    if isinstance(data, dict):
        data = data.get('coins', data.get('symbols', []))
    if not isinstance(data, list):
        raise ValueError("universe file must hold a list or a {'coins': [...]} mapping")
    return data


def load_universe(path: str, quote: str = 'USDT') -> List[str]:
    file_path = Path(path)
    if not file_path.exists():
        logger.warning("Universe file %s not found", file_path)
        return []
    data = json.loads(file_path.read_text(encoding='utf-8'))
    symbols: List[str] = []
    seen = set()
    for entry in _entries(data):
        raw = entry.get('symbol') if isinstance(entry, dict) else entry
        if not raw:
            continue
        symbol = normalize_symbol(raw, quote)
        if symbol not in seen:
            seen.add(symbol)
            symbols.append(symbol)
    logger.info("Loaded %d symbols from %s", len(symbols), file_path)
    return symbols
