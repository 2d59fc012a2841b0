from __future__ import annotations
from typing import TYPE_CHECKING, List
from abc import ABC, abstractmethod

from .models import WatchState
from .pricing import cancel_triggered, entry_triggered

if TYPE_CHECKING:
    from .models import PendingAnomaly
    from .watchlist_manager import WatchlistManager, WatchTransition


class WatchStateProcessor(ABC):
    def __init__(self, anomaly: PendingAnomaly, manager: WatchlistManager):
        self.anomaly = anomaly
        self.manager = manager

    @abstractmethod
    def process(self, current_price: float, now: float) -> List[WatchTransition]:
        pass

    def _timed_out(self, now: float) -> bool:
        entered = self.anomaly.watchlist_entered_at
        return entered is not None and now - entered > self.manager.timeout_s


class PendingState(WatchStateProcessor):
    """Entry restored before its consolidation check finished."""

    def process(self, current_price: float, now: float) -> List[WatchTransition]:
        transitions = []
        from_state = self.anomaly.state.value
        if self._timed_out(now):
            self.manager._finish(self.anomaly, from_state, WatchState.TIMED_OUT, 'timeout', transitions)
            return transitions
        self.manager._check_consolidation(self.anomaly, transitions)
        if self.anomaly.state is WatchState.ARMED:
            transitions.extend(ArmedState(self.anomaly, self.manager).process(current_price, now))
        return transitions


class ArmedState(WatchStateProcessor):
    def process(self, current_price: float, now: float) -> List[WatchTransition]:
        transitions = []
        if self._timed_out(now):
            self.manager._finish(self.anomaly, 'armed', WatchState.TIMED_OUT, 'timeout', transitions)
            return transitions

        trade_type = self.anomaly.trade_type
        if entry_triggered(current_price, self.anomaly.entry_level, trade_type):
            self.manager._finish(self.anomaly, 'armed', WatchState.CONFIRMED, 'converted', transitions)
        elif cancel_triggered(current_price, self.anomaly.cancel_level, trade_type):
            self.manager._finish(self.anomaly, 'armed', WatchState.CANCELLED, 'cancelled', transitions)
        return transitions
