"""Direction-aware price arithmetic shared by the watchlist and position managers."""
from .models import TradeType

RATIO_PRECISION = 10


def offset_price(price: float, trade_type: TradeType, percent: float, favourable: bool = True) -> float:
    """Shift ``price`` by ``percent`` towards (or against) the trade direction."""
    sign = trade_type.sign if favourable else -trade_type.sign
    return price * (1 + sign * percent)


def directional_move(entry_price: float, price: float, trade_type: TradeType) -> float:
    """Relative move from entry, positive when the trade is in profit."""
    return trade_type.sign * (price - entry_price) / entry_price


def relative_deviation(value: float, reference: float) -> float:
    return round((value - reference) / reference, RATIO_PRECISION)


def progress_to_target(entry_price: float, target_price: float, price: float, trade_type: TradeType) -> float:
    distance = target_price - entry_price
    if distance == 0:
        return 0.0
    progress = round((price - entry_price) / distance, RATIO_PRECISION)
    return max(0.0, min(1.0, progress))


def target_reached(price: float, target: float, trade_type: TradeType) -> bool:
    if trade_type is TradeType.LONG:
        return price >= target
    return price <= target


def stop_hit(price: float, stop: float, trade_type: TradeType) -> bool:
    if trade_type is TradeType.LONG:
        return price <= stop
    return price >= stop


def entry_triggered(price: float, entry_level: float, trade_type: TradeType) -> bool:
    if trade_type is TradeType.LONG:
        return price > entry_level
    return price < entry_level


def cancel_triggered(price: float, cancel_level: float, trade_type: TradeType) -> bool:
    if trade_type is TradeType.LONG:
        return price < cancel_level
    return price > cancel_level
