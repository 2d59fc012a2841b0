#!/usr/bin/env python
import sys
import asyncio
import json

sys.path.insert(0, '.')

from api.alerts import NotificationDispatcher
from backtest.replay import ReplayClock, ReplaySimulator, ReplaySource
from orchestration.engine import TradingEngine
from orchestration.persistence import PersistenceGateway
from tests.engine_fixtures import BASE_TS, INTERVAL, RecordingSink, anomaly_window, make_settings, tick

START = BASE_TS + 8 * INTERVAL


def _events():
    return [
        {'ts': START, 'type': 'candles',
         'payload': {'symbol': 'BTCUSDT', 'candles': [c.to_dict() for c in anomaly_window()]}},
        {'ts': START + 120, 'type': 'kline', 'payload': {'symbol': 'BTCUSDT', 'candle': tick(103.0).to_dict()}},
        {'ts': START + 60, 'type': 'kline', 'payload': {'symbol': 'BTCUSDT', 'candle': tick(99.7).to_dict()}},
        {'ts': START + 180, 'type': 'kline', 'payload': {'symbol': 'BTCUSDT', 'candle': tick(90.0).to_dict()}},
        {'ts': START + 240, 'type': 'kline', 'payload': {'symbol': 'ETHUSDT', 'candle': tick(1.0).to_dict()}},
    ]


def _simulator(tmp_path):
    clock = ReplayClock()
    source = ReplaySource()
    sink = RecordingSink()
    engine = TradingEngine(make_settings(), source, PersistenceGateway(str(tmp_path / 'data')),
                           notifier=NotificationDispatcher([sink]), clock=clock)
    return ReplaySimulator(engine, source, clock), sink


def test_replay_drives_engine_through_a_trade(tmp_path):
    sim, sink = _simulator(tmp_path)
    sim.load_from_list(_events())
    counts = asyncio.run(sim.replay())

    assert counts == {'candles': 1, 'kline': 4, 'delivered': 2, 'sweep': 0}
    assert sink.kinds() == [
        'anomaly_watchlisted',
        'watchlist_removed',
        'position_opened',
        'break_even_promoted',
        'position_closed',
    ]
    trade = sim.engine.positions.ledger[0]
    assert trade.position.entry_time == START + 60
    assert trade.exit_time == START + 120
    assert sim.source.unsubscribed == ['BTCUSDT']
    assert not sim.engine.running


def test_replay_loads_jsonl_and_sweeps_stale_entries(tmp_path):
    path = tmp_path / 'events.jsonl'
    events = _events()[:1] + [{'ts': START + 7 * INTERVAL, 'type': 'sweep'}]
    path.write_text('\n'.join(json.dumps(ev) for ev in events) + '\n', encoding='utf-8')

    sim, sink = _simulator(tmp_path)
    sim.load_from_file(str(path))
    counts = asyncio.run(sim.replay())

    assert counts['sweep'] == 1
    assert sink.kinds() == ['anomaly_watchlisted', 'watchlist_removed']
    assert sink.events[-1].payload['reason'] == 'timeout'
    assert sim.engine.watchlist.leads[0].outcome.value == 'timeout'


def test_empty_replay_is_a_no_op(tmp_path):
    sim, sink = _simulator(tmp_path)
    sim.load_from_list([])
    assert asyncio.run(sim.replay()) == {'candles': 0, 'kline': 0, 'delivered': 0, 'sweep': 0}
    assert sink.events == []
