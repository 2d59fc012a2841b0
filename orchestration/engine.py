import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from analytics.statistics import StatisticsAccumulator, watchlist_summary
from config.settings import TradingSettings
from ingest.source import CandleSource
from monitoring.async_utils import run_tasks_with_cleanup
from strategy.anomaly_detector import AnomalyDetector
from strategy.models import (
    Candle,
    ClosedTrade,
    EngineEvent,
    EventKind,
    InvariantViolation,
    LeadOutcome,
    Position,
    WatchState,
)
from strategy.position_manager import PositionManager, PositionUpdate
from strategy.watchlist_manager import WatchlistManager, WatchTransition
from .locks import SymbolLocks
from .persistence import LEADS, PENDING, POSITIONS, TRADES, PersistenceGateway

logger = logging.getLogger(__name__)


class TradingEngine:
    """Owns all per-run state and drives the slow scan and fast candle paths."""

    def __init__(
        self,
        settings: TradingSettings,
        source: CandleSource,
        gateway: PersistenceGateway,
        notifier=None,
        metrics=None,
        journal=None,
        symbols: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
        scan_interval_s: float = 300,
        sweep_interval_s: float = 30,
        scan_concurrency: int = 5,
        fetch_limit: Optional[int] = None,
    ):
        self.settings = settings
        self.source = source
        self.gateway = gateway
        self.notifier = notifier
        self.metrics = metrics
        self.journal = journal
        self.symbols: List[str] = list(symbols)
        self.clock = clock
        self.scan_interval_s = scan_interval_s
        self.sweep_interval_s = sweep_interval_s
        self.scan_concurrency = max(1, int(scan_concurrency))
        self.fetch_limit = fetch_limit or max(settings.historical_window + 2, 20)

        self.detector = AnomalyDetector(settings)
        self.cooldowns = self.detector.cooldowns
        self.watchlist = WatchlistManager(settings)
        self.positions = PositionManager(settings)
        self.statistics = StatisticsAccumulator(clock)
        self.locks = SymbolLocks()
        self.quarantined: Set[str] = set()

        self.running = False
        self.started_at: Optional[float] = None
        self.last_scan_at: Optional[float] = None
        self._tasks: List[asyncio.Task] = []
        self._snapshots = {
            PENDING: self.watchlist.snapshot,
            POSITIONS: self.positions.snapshot,
            TRADES: self.positions.ledger_snapshot,
            LEADS: self.watchlist.leads_snapshot,
        }

    # ------------------------------------------------------------------ state

    def tracked(self, symbol: str) -> bool:
        return symbol in self.watchlist or symbol in self.positions

    def _persist(self, *collections: str) -> None:
        for collection in collections:
            self.gateway.save(collection, self._snapshots[collection]())
        if self.metrics is not None:
            self.metrics.update_state(len(self.watchlist), len(self.positions))

    def _event(self, kind: EventKind, symbol: Optional[str], now: float, **payload) -> EngineEvent:
        return EngineEvent(kind=kind, symbol=symbol, timestamp=now, payload=payload)

    def _notify(self, events: List[EngineEvent]) -> None:
        if self.notifier is None:
            return
        for event in events:
            self.notifier.dispatch(event)

    def running_statistics(self, now: Optional[float] = None) -> Dict[str, Any]:
        stats = self.statistics.compute(self.positions.ledger, self.watchlist.leads, now)
        return {
            'total_trades': stats.total_trades,
            'win_rate': stats.win_rate,
            'total_profit_percent': stats.total_profit_percent,
            'conversion_rate': stats.conversion_rate,
        }

    async def _quarantine(self, symbol: str, exc: Exception) -> None:
        self.quarantined.add(symbol)
        logger.error("%s: invariant violation, symbol quarantined: %s", symbol, exc)
        if self.metrics is not None:
            self.metrics.record_invariant_violation()
        await self.source.unsubscribe(symbol)

    # --------------------------------------------------------------- startup

    async def initialize(self) -> None:
        data = self.gateway.load_all()
        self.positions.restore(data.get(POSITIONS, []))
        self.positions.restore_ledger(data.get(TRADES, []))
        self.watchlist.restore_leads(data.get(LEADS, []))
        self.watchlist.restore(
            record for record in data.get(PENDING, [])
            if record.get('symbol') not in self.positions
        )
        logger.info(
            "Restored %d pending anomalies, %d open positions, %d closed trades, %d leads",
            len(self.watchlist), len(self.positions), len(self.positions.ledger), len(self.watchlist.leads),
        )
        for symbol in self.watchlist.symbols() + self.positions.symbols():
            await self.source.subscribe(symbol, self.on_candle)
        if self.metrics is not None:
            self.metrics.update_state(len(self.watchlist), len(self.positions))
        if len(self.positions):
            now = self.clock()
            self._notify([self._event(
                EventKind.EXISTING_POSITIONS, None, now,
                count=len(self.positions),
                symbols=self.positions.symbols(),
                positions=self.positions.snapshot(),
            )])

    # ------------------------------------------------------------- slow path

    async def scan_symbol(self, symbol: str) -> Optional[WatchTransition]:
        if symbol in self.quarantined or self.tracked(symbol):
            return None
        if self.cooldowns.is_cooling(symbol, self.clock()):
            return None
        candles = await self.source.fetch_historical_candles(symbol, limit=self.fetch_limit)
        if not candles:
            return None

        async with self.locks(symbol):
            now = self.clock()
            try:
                anomaly = self.detector.detect(symbol, candles, now, tracked=self.tracked(symbol))
                if anomaly is None:
                    return None
                if self.metrics is not None:
                    self.metrics.record_anomaly(anomaly.trade_type.value)
                transition = self.watchlist.add(anomaly, now, has_open_position=symbol in self.positions)
            except InvariantViolation as exc:
                await self._quarantine(symbol, exc)
                return None

            if transition.to_state is WatchState.CONSOLIDATION_FAILED:
                self.watchlist.discard(symbol, LeadOutcome.CONSOLIDATION_FAILURE, now, anomaly.anomaly_close)
                self._persist(LEADS)
                if self.journal is not None:
                    self.journal.record(anomaly, WatchState.CONSOLIDATION_FAILED.value, now)
                if self.metrics is not None:
                    self.metrics.record_watchlist_outcome(LeadOutcome.CONSOLIDATION_FAILURE.value)
                self._notify([self._event(
                    EventKind.WATCHLIST_REMOVED, symbol, now,
                    reason=LeadOutcome.CONSOLIDATION_FAILURE.value,
                    anomaly=anomaly.to_dict(),
                )])
                return transition

            await self.source.subscribe(symbol, self.on_candle)
            self._persist(PENDING)
            if self.journal is not None:
                self.journal.record(anomaly, transition.to_state.value, now)
            self._notify([self._event(
                EventKind.ANOMALY_WATCHLISTED, symbol, now,
                trade_type=anomaly.trade_type.value,
                anomaly_price=anomaly.anomaly_price,
                historical_price=anomaly.historical_price,
                volume_leverage=anomaly.volume_leverage,
                entry_level=anomaly.entry_level,
                cancel_level=anomaly.cancel_level,
                anomaly_time=anomaly.anomaly_time,
                watchlist=watchlist_summary(self.watchlist.pending.values()),
            )])
            return transition

    async def run_scan(self, symbols: Optional[Iterable[str]] = None) -> List[WatchTransition]:
        targets = list(symbols) if symbols is not None else list(self.symbols)
        started = time.monotonic()
        semaphore = asyncio.Semaphore(self.scan_concurrency)

        async def bounded(symbol: str):
            async with semaphore:
                return await self.scan_symbol(symbol)

        results = await asyncio.gather(*(bounded(s) for s in targets), return_exceptions=True)
        transitions: List[WatchTransition] = []
        for symbol, result in zip(targets, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.error("%s: scan failed: %s", symbol, result, exc_info=result)
            elif result is not None:
                transitions.append(result)
        self.cooldowns.prune(self.clock())
        self.last_scan_at = self.clock()
        if self.metrics is not None:
            self.metrics.observe_scan(time.monotonic() - started)
        logger.info("Scan of %d symbols finished: %d new watchlist entries", len(targets), len(transitions))
        return transitions

    # ------------------------------------------------------------- fast path

    async def on_candle(self, symbol: str, candle: Candle) -> None:
        if symbol in self.quarantined:
            return
        async with self.locks(symbol):
            if symbol in self.quarantined or not self.tracked(symbol):
                return
            now = self.clock()
            price = candle.close
            try:
                if symbol in self.watchlist:
                    transition = self.watchlist.evaluate(symbol, price, now)
                    if transition is not None:
                        await self._resolve_watch(transition, price, now)
                elif symbol in self.positions:
                    update = self.positions.evaluate(symbol, price, now)
                    await self._apply_position_update(update, price, now)
            except InvariantViolation as exc:
                await self._quarantine(symbol, exc)

    async def _resolve_watch(self, transition: WatchTransition, price: Optional[float], now: float) -> None:
        symbol = transition.symbol
        if not transition.terminal:
            self._persist(PENDING)
            return
        outcome = transition.outcome

        if transition.to_state is WatchState.CONFIRMED:
            # nothing changes until the position validates
            request = self.watchlist.position_request(symbol, price)
            position = self.positions.prepare(request, now)
            self.watchlist.confirm(symbol, price, now)
            self.positions.add(position)
            self._persist(PENDING, POSITIONS, LEADS)
            if self.metrics is not None:
                self.metrics.record_watchlist_outcome(outcome.value)
                self.metrics.record_position_opened(position.trade_type.value)
            stats = self.running_statistics(now)
            self._notify([
                self._event(EventKind.WATCHLIST_REMOVED, symbol, now, reason=outcome.value,
                            price=price, anomaly_id=request.anomaly_id),
                self._position_event(EventKind.POSITION_OPENED, position, now, statistics=stats,
                                     volume_leverage=request.volume_leverage),
            ])
            return

        if self.metrics is not None:
            self.metrics.record_watchlist_outcome(outcome.value)
        await self.source.unsubscribe(symbol)
        lead = self.watchlist.discard(symbol, outcome, now, price)
        self._persist(PENDING, LEADS)
        self._notify([self._event(
            EventKind.WATCHLIST_REMOVED, symbol, now,
            reason=outcome.value,
            price=price,
            lifetime_minutes=lead.lifetime_minutes if lead else None,
            trade_type=transition.anomaly.trade_type.value,
        )])

    def _position_event(self, kind: EventKind, position: Position, now: float, **extra) -> EngineEvent:
        return self._event(
            kind, position.symbol, now,
            trade_type=position.trade_type.value,
            entry_price=position.entry_price,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            entry_time=position.entry_time,
            **extra,
        )

    async def _apply_position_update(self, update: PositionUpdate, price: float, now: float) -> Optional[ClosedTrade]:
        symbol = update.symbol
        position = self.positions.get(symbol)
        if position is None:
            return None
        events: List[EngineEvent] = []
        if update.break_even_promoted:
            if self.metrics is not None:
                self.metrics.record_break_even()
            events.append(self._position_event(
                EventKind.BREAK_EVEN_PROMOTED, position, now,
                progress=update.progress, previous_stop=update.previous_stop, new_stop=update.new_stop,
            ))
        for level in update.executed_levels:
            events.append(self._event(EventKind.LEVEL_EXECUTED, symbol, now, **level.to_dict()))
        if self.metrics is not None:
            self.metrics.record_level_executed(len(update.executed_levels))

        trade = None
        if update.exit_reason is not None:
            await self.source.unsubscribe(symbol)
            trade = self.positions.close(symbol, price, update.exit_reason, now)
            self._persist(POSITIONS, TRADES)
            if self.metrics is not None:
                self.metrics.record_position_closed(update.exit_reason.value, trade.profit_loss_percent)
            payload = trade.to_dict()
            payload['statistics'] = self.running_statistics(now)
            events.append(EngineEvent(kind=EventKind.POSITION_CLOSED, symbol=symbol, timestamp=now, payload=payload))
        elif not update.empty:
            self._persist(POSITIONS)
        self._notify(events)
        return trade

    async def sweep_expired(self) -> List[WatchTransition]:
        resolved: List[WatchTransition] = []
        for symbol in self.watchlist.symbols():
            if symbol in self.quarantined:
                continue
            async with self.locks(symbol):
                now = self.clock()
                try:
                    for transition in self.watchlist.expire(now, symbols=[symbol]):
                        await self._resolve_watch(transition, transition.price, now)
                        resolved.append(transition)
                except InvariantViolation as exc:
                    await self._quarantine(symbol, exc)
        self.cooldowns.prune(self.clock())
        return resolved

    # ------------------------------------------------------------- lifecycle

    async def _scan_loop(self):
        while self.running:
            await self.run_scan()
            await asyncio.sleep(self.scan_interval_s)

    async def _sweep_loop(self):
        while self.running:
            await asyncio.sleep(self.sweep_interval_s)
            expired = await self.sweep_expired()
            if expired:
                logger.info("Expired %d stale watchlist entries", len(expired))

    async def start(self):
        self.running = True
        self.started_at = self.clock()
        await self.initialize()
        self._tasks = [
            asyncio.create_task(self.source.start()),
            asyncio.create_task(self._scan_loop()),
            asyncio.create_task(self._sweep_loop()),
        ]
        await run_tasks_with_cleanup(self._tasks, cleanup=self._shutdown)

    async def _shutdown(self):
        self.running = False
        await self.source.stop()
        if self.notifier is not None:
            await self.notifier.drain()
        logger.info("Engine stopped")

    async def stop(self):
        if not self.running:
            return
        self.running = False
        for task in self._tasks:
            if not task.done():
                task.cancel()

    def status(self) -> Dict[str, Any]:
        now = self.clock()
        return {
            'running': self.running,
            'started_at': self.started_at,
            'last_scan_at': self.last_scan_at,
            'symbols': len(self.symbols),
            'pending': self.watchlist.snapshot(),
            'positions': self.positions.snapshot(),
            'watchlist_summary': watchlist_summary(self.watchlist.pending.values()),
            'cooling_down': self.cooldowns.active(now),
            'quarantined': sorted(self.quarantined),
            'timestamp': now,
        }
