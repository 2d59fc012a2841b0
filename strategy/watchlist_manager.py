from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
import logging

from config.settings import TradingSettings
from .models import (
    InvariantViolation,
    LeadOutcome,
    LeadRecord,
    PendingAnomaly,
    PositionRequest,
    WatchState,
)
from .pricing import offset_price

logger = logging.getLogger(__name__)

OUTCOME_BY_STATE = {
    WatchState.CONFIRMED: LeadOutcome.CONVERTED,
    WatchState.CANCELLED: LeadOutcome.CANCELLED,
    WatchState.TIMED_OUT: LeadOutcome.TIMEOUT,
    WatchState.CONSOLIDATION_FAILED: LeadOutcome.CONSOLIDATION_FAILURE,
}


@dataclass
class WatchTransition:
    symbol: str
    from_state: str
    to_state: WatchState
    reason: str
    anomaly: PendingAnomaly
    price: Optional[float] = None
    at: Optional[float] = None

    @property
    def terminal(self) -> bool:
        return self.to_state.terminal

    @property
    def outcome(self) -> Optional[LeadOutcome]:
        return OUTCOME_BY_STATE.get(self.to_state)


from .watchlist_states import ArmedState, PendingState


class WatchlistManager:
    """Owns every unconfirmed anomaly, keyed by symbol."""

    def __init__(self, settings: TradingSettings):
        self.settings = settings
        self.timeout_s = settings.confirmation_timeout_seconds
        self.pending: Dict[str, PendingAnomaly] = {}
        self.leads: List[LeadRecord] = []
        self.state_map = {
            WatchState.PENDING: PendingState,
            WatchState.CONSOLIDATING: PendingState,
            WatchState.ARMED: ArmedState,
        }

    def __contains__(self, symbol: str) -> bool:
        return symbol in self.pending

    def __len__(self) -> int:
        return len(self.pending)

    def get(self, symbol: str) -> Optional[PendingAnomaly]:
        return self.pending.get(symbol)

    def symbols(self) -> List[str]:
        return list(self.pending)

    def add(self, anomaly: PendingAnomaly, now: float, has_open_position: bool = False) -> WatchTransition:
        symbol = anomaly.symbol
        if symbol in self.pending:
            raise InvariantViolation(f"{symbol} is already on the watchlist")
        if has_open_position:
            raise InvariantViolation(f"{symbol} already holds an open position")

        anomaly.watchlist_entered_at = now
        anomaly.entry_level = offset_price(anomaly.anomaly_close, anomaly.trade_type,
                                           self.settings.entry_level_percent)
        anomaly.cancel_level = offset_price(anomaly.anomaly_close, anomaly.trade_type,
                                            self.settings.cancel_level_percent, favourable=False)
        anomaly.state = WatchState.PENDING
        self.pending[symbol] = anomaly

        transitions: List[WatchTransition] = []
        self._check_consolidation(anomaly, transitions)
        transition = transitions[-1]
        transition.at = now
        logger.info(
            "%s: watchlisted %s anomaly (entry %.8f, cancel %.8f) -> %s",
            symbol, anomaly.trade_type.value, anomaly.entry_level, anomaly.cancel_level,
            transition.to_state.value,
        )
        return transition

    def evaluate(self, symbol: str, price: float, now: float) -> Optional[WatchTransition]:
        anomaly = self.pending.get(symbol)
        if anomaly is None:
            return None
        if anomaly.state.terminal:
            logger.debug("%s: ignoring update for %s entry", symbol, anomaly.state.value)
            return None
        anomaly.last_observed_price = price
        anomaly.last_observed_at = now
        processor = self.state_map[anomaly.state](anomaly, self)
        transitions = processor.process(price, now)
        for transition in transitions:
            transition.price = price
            transition.at = now
        return transitions[-1] if transitions else None

    def expire(self, now: float, symbols: Optional[Iterable[str]] = None) -> List[WatchTransition]:
        transitions: List[WatchTransition] = []
        if symbols is None:
            candidates = list(self.pending.values())
        else:
            candidates = [self.pending[s] for s in symbols if s in self.pending]
        for anomaly in candidates:
            if anomaly.state.terminal or anomaly.watchlist_entered_at is None:
                continue
            if now - anomaly.watchlist_entered_at > self.timeout_s:
                self._finish(anomaly, anomaly.state.value, WatchState.TIMED_OUT, 'timeout', transitions)
                transitions[-1].at = now
                transitions[-1].price = anomaly.last_observed_price
        return transitions

    def position_request(self, symbol: str, price: float) -> PositionRequest:
        """Build the request for a confirmed entry without removing it."""
        anomaly = self.pending.get(symbol)
        if anomaly is None:
            raise InvariantViolation(f"{symbol} is not on the watchlist")
        if anomaly.state is not WatchState.CONFIRMED:
            raise InvariantViolation(f"{symbol} cannot be confirmed from state {anomaly.state.value}")
        return PositionRequest(
            symbol=symbol,
            trade_type=anomaly.trade_type,
            entry_price=price,
            anomaly_id=anomaly.anomaly_id,
            volume_leverage=anomaly.volume_leverage,
            entry_level=anomaly.entry_level,
            cancel_level=anomaly.cancel_level,
        )

    def confirm(self, symbol: str, price: float, now: float) -> PositionRequest:
        request = self.position_request(symbol, price)
        anomaly = self.pending.pop(symbol)
        self._record_lead(anomaly, LeadOutcome.CONVERTED, now, price)
        return request

    def discard(self, symbol: str, outcome: LeadOutcome, now: float,
                price: Optional[float] = None) -> Optional[LeadRecord]:
        if outcome is LeadOutcome.CONVERTED:
            raise InvariantViolation("Converted leads must go through confirm()")
        anomaly = self.pending.pop(symbol, None)
        if anomaly is None:
            return None
        return self._record_lead(anomaly, outcome, now, price)

    def _record_lead(self, anomaly: PendingAnomaly, outcome: LeadOutcome, now: float,
                     price: Optional[float]) -> LeadRecord:
        lead = LeadRecord(
            symbol=anomaly.symbol,
            trade_type=anomaly.trade_type,
            anomaly_id=anomaly.anomaly_id,
            outcome=outcome,
            entered_at=anomaly.watchlist_entered_at if anomaly.watchlist_entered_at is not None else now,
            resolved_at=now,
            volume_leverage=anomaly.volume_leverage,
            resolution_price=price,
        )
        self.leads.append(lead)
        logger.info("%s: lead resolved as %s after %.1f min", anomaly.symbol, outcome.value, lead.lifetime_minutes)
        return lead

    def _check_consolidation(self, anomaly: PendingAnomaly, transitions: List[WatchTransition]) -> None:
        from_state = anomaly.state.value
        if not self.settings.require_consolidation:
            anomaly.state = WatchState.ARMED
            self._emit(transitions, anomaly, from_state, WatchState.ARMED, 'armed')
            return
        anomaly.state = WatchState.CONSOLIDATING
        candle_range = (anomaly.anomaly_high - anomaly.anomaly_low) / anomaly.anomaly_low
        anomaly.is_consolidated = candle_range < self.settings.consolidation_threshold
        if anomaly.is_consolidated:
            anomaly.state = WatchState.ARMED
            self._emit(transitions, anomaly, from_state, WatchState.ARMED, 'consolidated')
        else:
            logger.info("%s: range %.4f breaks consolidation threshold", anomaly.symbol, candle_range)
            self._finish(anomaly, from_state, WatchState.CONSOLIDATION_FAILED,
                         'consolidation_failure', transitions)

    def _finish(self, anomaly: PendingAnomaly, from_state: str, to_state: WatchState,
                reason: str, transitions: List[WatchTransition]) -> None:
        anomaly.state = to_state
        self._emit(transitions, anomaly, from_state, to_state, reason)

    def _emit(self, transitions: List[WatchTransition], anomaly: PendingAnomaly, from_state: str,
              to_state: WatchState, reason: str) -> None:
        transitions.append(
            WatchTransition(
                symbol=anomaly.symbol,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                anomaly=anomaly,
            )
        )

    def snapshot(self) -> List[Dict[str, Any]]:
        return [anomaly.to_dict() for anomaly in self.pending.values() if not anomaly.state.terminal]

    def restore(self, records: Iterable[Dict[str, Any]]) -> int:
        restored = 0
        for record in records:
            try:
                anomaly = PendingAnomaly.from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid pending anomaly record %r: %s", record, exc)
                continue
            if anomaly.state.terminal:
                logger.warning("Skipping %s pending record in terminal state %s", anomaly.symbol, anomaly.state.value)
                continue
            if anomaly.symbol in self.pending:
                logger.warning("Duplicate pending record for %s ignored", anomaly.symbol)
                continue
            self.pending[anomaly.symbol] = anomaly
            restored += 1
        return restored

    def restore_leads(self, records: Iterable[Dict[str, Any]]) -> int:
        restored = 0
        for record in records:
            try:
                self.leads.append(LeadRecord.from_dict(record))
                restored += 1
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid lead record %r: %s", record, exc)
        return restored

    def leads_snapshot(self) -> List[Dict[str, Any]]:
        return [lead.to_dict() for lead in self.leads]
