import asyncio
import logging
import aiohttp
from typing import Dict, Iterable, List, Optional, Set

from config import config
from strategy.models import EngineEvent, EventKind


logger = logging.getLogger(__name__)

SEVERITY = {
    EventKind.ANOMALY_WATCHLISTED: 'info',
    EventKind.WATCHLIST_REMOVED: 'info',
    EventKind.POSITION_OPENED: 'info',
    EventKind.LEVEL_EXECUTED: 'info',
    EventKind.POSITION_CLOSED: 'info',
    EventKind.BREAK_EVEN_PROMOTED: 'info',
    EventKind.EXISTING_POSITIONS: 'warning',
}


class NotificationError(RuntimeError):
    pass


def format_event(event: EngineEvent) -> str:
    p = event.payload
    kind = event.kind
    if kind is EventKind.ANOMALY_WATCHLISTED:
        return (f"{event.symbol} {p.get('trade_type')} anomaly x{p.get('volume_leverage', 0):.2f} "
                f"watchlisted: entry {p.get('entry_level')}, cancel {p.get('cancel_level')}")
    if kind is EventKind.WATCHLIST_REMOVED:
        return f"{event.symbol} removed from watchlist: {p.get('reason')}"
    if kind is EventKind.POSITION_OPENED:
        return (f"{event.symbol} {p.get('trade_type')} opened at {p.get('entry_price')} "
                f"(SL {p.get('stop_loss')}, TP {p.get('take_profit')})")
    if kind is EventKind.LEVEL_EXECUTED:
        return (f"{event.symbol} level {p.get('level_number')} executed at {p.get('execution_price')} "
                f"({p.get('profit_loss_percent', 0):.2f}%)")
    if kind is EventKind.POSITION_CLOSED:
        return (f"{event.symbol} {p.get('trade_type')} closed by {p.get('close_reason')} at "
                f"{p.get('exit_price')} ({p.get('profit_loss_percent', 0):.2f}%)")
    if kind is EventKind.BREAK_EVEN_PROMOTED:
        return f"{event.symbol} stop moved to break-even: {p.get('previous_stop')} -> {p.get('new_stop')}"
    if kind is EventKind.EXISTING_POSITIONS:
        return f"{p.get('count', 0)} open positions restored: {', '.join(p.get('symbols', []))}"
    return f"{kind.value} {event.symbol or ''}".strip()


class AlertWebhook:
    def __init__(self, url: Optional[str] = None, timeout_s: float = 5.0):
        if url is None:
            monitoring = config.get('monitoring')
            url = monitoring.get('alert_webhook') if monitoring else None
        # Treat empty or unresolved placeholder URLs as disabled
        if url and not str(url).startswith('${') and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        self.timeout_s = timeout_s

    async def send_alert(self, alert_type: str, message: str, severity: str = 'info',
                         metadata: Dict = None):
        if not self.enabled:
            logger.info(
                "[Alert] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'metadata': metadata or {}
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s)
                ) as response:
                    if response.status != 200:
                        raise NotificationError(f"Webhook failed with status {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NotificationError(f"Webhook error: {exc}") from exc

    async def notify(self, event: EngineEvent):
        await self.send_alert(
            event.kind.value,
            format_event(event),
            SEVERITY.get(event.kind, 'info'),
            event.to_dict(),
        )


class NotificationDispatcher:
    """Fans events out to sinks as background tasks; delivery failures are logged only."""

    def __init__(self, sinks: Iterable = (), metrics=None):
        self.sinks: List = list(sinks)
        self.metrics = metrics
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, event: EngineEvent) -> None:
        for sink in self.sinks:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("No running loop; dropping %s notification for %s", event.kind.value, event.symbol)
                return
            task = loop.create_task(self._deliver(sink, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, sink, event: EngineEvent) -> None:
        try:
            await sink.notify(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Notification %s for %s failed: %s", event.kind.value, event.symbol, exc)
            if self.metrics is not None:
                self.metrics.record_notification_failure(event.kind.value)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)
