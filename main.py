import argparse
import asyncio
import logging
from typing import List, Optional

from api.alerts import AlertWebhook, NotificationDispatcher
from api.metrics import metrics, start_metrics_server
from config import config
from ingest.market_data_manager import MarketDataManager
from ingest.rest_poller import RESTPoller
from ingest.universe import load_universe, normalize_symbol
from ingest.websocket_client import KlineStreamClient
from monitoring.anomaly_journal import AnomalyJournal
from monitoring.logging_utils import setup_logging
from orchestration.engine import TradingEngine
from orchestration.persistence import LEADS, PENDING, POSITIONS, TRADES, PersistenceGateway


logger = logging.getLogger(__name__)


def resolve_symbols(engine_cfg) -> List[str]:
    symbols = [normalize_symbol(s) for s in (engine_cfg.get('symbols') or [])]
    if symbols:
        return symbols
    universe_file = engine_cfg.get('universe_file')
    return load_universe(universe_file) if universe_file else []


def build_engine(config_obj=None) -> TradingEngine:
    cfg = config_obj or config
    settings = cfg.trading_settings()
    engine_cfg = cfg.get('engine') or {}
    persistence_cfg = cfg.get('persistence') or {}
    monitoring_cfg = cfg.get('monitoring') or {}

    rest_poller = RESTPoller(timeframe=settings.timeframe, metrics=metrics)
    ws_client = KlineStreamClient(timeframe=settings.timeframe, metrics=metrics)
    source = MarketDataManager(ws_client, rest_poller)
    gateway = PersistenceGateway(
        persistence_cfg.get('data_dir', 'data'),
        files={
            PENDING: persistence_cfg.get('pending_file'),
            POSITIONS: persistence_cfg.get('positions_file'),
            TRADES: persistence_cfg.get('trades_file'),
            LEADS: persistence_cfg.get('leads_file'),
        },
        metrics=metrics,
    )
    notifier = NotificationDispatcher([AlertWebhook()], metrics=metrics)
    journal = AnomalyJournal(monitoring_cfg.get('anomaly_journal_dir', 'logs/anomalies'))

    return TradingEngine(
        settings,
        source,
        gateway,
        notifier=notifier,
        metrics=metrics,
        journal=journal,
        symbols=resolve_symbols(engine_cfg),
        scan_interval_s=float(engine_cfg.get('scan_interval_s', 300)),
        sweep_interval_s=float(engine_cfg.get('sweep_interval_s', 30)),
        scan_concurrency=int(engine_cfg.get('scan_concurrency', 5)),
        fetch_limit=engine_cfg.get('fetch_limit'),
    )


async def main(with_api: bool = False):
    engine = build_engine()
    logger.info("Watching %d symbols on %s candles", len(engine.symbols), engine.settings.timeframe)
    start_metrics_server(int(config.monitoring.get('prometheus_port', 9090)))
    try:
        if with_api:
            import uvicorn
            from api.fastapi_server import create_app

            api_cfg = config.get('api') or {}
            server = uvicorn.Server(uvicorn.Config(
                create_app(engine, run_engine=True),
                host=api_cfg.get('host', '127.0.0.1'),
                port=int(api_cfg.get('port', 8000)),
                log_level='info',
            ))
            await server.serve()
        else:
            await engine.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await engine.stop()


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Volume anomaly trading engine")
    parser.add_argument('--api', action='store_true', help="serve the read-only status API alongside the engine")
    parser.add_argument('--log-level', default=None)
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = parse_args()
    setup_logging(args.log_level or config.monitoring.get('log_level', 'INFO'))
    asyncio.run(main(with_api=args.api))
