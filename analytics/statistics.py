"""Aggregate trading and lead statistics, recomputed from the full ledgers on demand."""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence
import math
import time

from strategy.models import ClosedTrade, LeadRecord, PendingAnomaly, TradeType

SECONDS_PER_DAY = 86400.0


@dataclass
class TradeSummary:
    symbol: str
    trade_type: str
    profit_loss_percent: float
    duration: float
    entry_time: float

    @classmethod
    def of(cls, trade: ClosedTrade) -> 'TradeSummary':
        return cls(
            symbol=trade.symbol,
            trade_type=trade.trade_type.value,
            profit_loss_percent=trade.profit_loss_percent,
            duration=trade.duration,
            entry_time=trade.position.entry_time,
        )


@dataclass
class DailyStats:
    trades: int = 0
    wins: int = 0
    losses: int = 0
    profit_percent: float = 0.0


@dataclass
class TradingStatistics:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_profit_percent: float = 0.0
    average_profit_percent: float = 0.0
    total_profit: float = 0.0
    total_commission: float = 0.0
    levels_executed: int = 0
    best_trade: Optional[TradeSummary] = None
    worst_trade: Optional[TradeSummary] = None
    longest_trade: Optional[TradeSummary] = None
    shortest_trade: Optional[TradeSummary] = None
    daily: Dict[str, DailyStats] = field(default_factory=dict)
    days_running: int = 0
    average_trades_per_day: float = 0.0
    total_leads: int = 0
    converted_leads: int = 0
    conversion_rate: float = 0.0
    average_lead_lifetime_minutes: float = 0.0
    lead_outcomes: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class StatisticsAccumulator:
    def __init__(self, clock=time.time):
        self.clock = clock

    def compute(self, ledger: Sequence[ClosedTrade], leads: Sequence[LeadRecord],
                now: Optional[float] = None) -> TradingStatistics:
        now = self.clock() if now is None else now
        stats = TradingStatistics()
        self._trade_stats(stats, ledger, now)
        self._lead_stats(stats, leads)
        return stats

    def _trade_stats(self, stats: TradingStatistics, ledger: Sequence[ClosedTrade], now: float) -> None:
        total = len(ledger)
        stats.total_trades = total
        if not total:
            return
        stats.winning_trades = sum(1 for t in ledger if t.profit_loss > 0)
        stats.losing_trades = sum(1 for t in ledger if t.profit_loss < 0)
        stats.win_rate = round(stats.winning_trades / total * 100, 1)
        stats.total_profit_percent = sum(t.profit_loss_percent for t in ledger)
        stats.average_profit_percent = round(stats.total_profit_percent / total, 2)
        stats.total_profit = sum(t.profit_loss for t in ledger)
        stats.total_commission = sum(t.commission for t in ledger)
        stats.levels_executed = sum(t.levels_executed for t in ledger)

        # first occurrence wins ties
        best = worst = longest = shortest = ledger[0]
        for trade in ledger[1:]:
            if trade.profit_loss_percent > best.profit_loss_percent:
                best = trade
            if trade.profit_loss_percent < worst.profit_loss_percent:
                worst = trade
            if trade.duration > longest.duration:
                longest = trade
            if trade.duration < shortest.duration:
                shortest = trade
        stats.best_trade = TradeSummary.of(best)
        stats.worst_trade = TradeSummary.of(worst)
        stats.longest_trade = TradeSummary.of(longest)
        stats.shortest_trade = TradeSummary.of(shortest)

        for trade in ledger:
            day = datetime.fromtimestamp(trade.exit_time, tz=timezone.utc).strftime('%Y-%m-%d')
            bucket = stats.daily.setdefault(day, DailyStats())
            bucket.trades += 1
            bucket.profit_percent += trade.profit_loss_percent
            if trade.profit_loss > 0:
                bucket.wins += 1
            elif trade.profit_loss < 0:
                bucket.losses += 1

        first_entry = min(t.position.entry_time for t in ledger)
        stats.days_running = max(1, math.ceil((now - first_entry) / SECONDS_PER_DAY))
        stats.average_trades_per_day = round(total / stats.days_running, 1)

    def _lead_stats(self, stats: TradingStatistics, leads: Sequence[LeadRecord]) -> None:
        stats.total_leads = len(leads)
        if not leads:
            return
        stats.converted_leads = sum(1 for lead in leads if lead.converted)
        stats.conversion_rate = round(stats.converted_leads / stats.total_leads * 100, 1)
        lifetime = sum(lead.lifetime_minutes for lead in leads) / stats.total_leads
        stats.average_lead_lifetime_minutes = round(lifetime, 1)
        for lead in leads:
            key = lead.outcome.value
            stats.lead_outcomes[key] = stats.lead_outcomes.get(key, 0) + 1


def watchlist_summary(pending: Iterable[PendingAnomaly]) -> Dict[str, Any]:
    entries: List[PendingAnomaly] = list(pending)
    longs = sum(1 for a in entries if a.trade_type is TradeType.LONG)
    leverage = sum(a.volume_leverage for a in entries) / len(entries) if entries else 0.0
    return {
        'total': len(entries),
        'long': longs,
        'short': len(entries) - longs,
        'average_volume_leverage': round(leverage, 2),
    }
