import json
import sys

sys.path.insert(0, '.')

from ingest.universe import load_universe, normalize_symbol
from monitoring.anomaly_journal import AnomalyJournal
from monitoring.logging_utils import resolve_level
from strategy.anomaly_detector import AnomalyDetector
from tests.engine_fixtures import anomaly_window, make_settings

T0 = 1_700_006_400.0  # 2023-11-15 00:00:00 UTC


def test_symbols_are_normalized():
    assert normalize_symbol('btc') == 'BTCUSDT'
    assert normalize_symbol('eth/usdt') == 'ETHUSDT'
    assert normalize_symbol('SOL-USDT') == 'SOLUSDT'
    assert normalize_symbol('ETH/BTC') == 'ETHBTC'
    assert normalize_symbol('ETHUSDT') == 'ETHUSDT'
    assert normalize_symbol('ada', quote='FDUSD') == 'ADAFDUSD'
    assert normalize_symbol('ethbtc', quote='btc') == 'ETHBTC'


def test_bare_bases_ending_in_a_quote_name_still_get_the_quote():
    bases = ['STETH', 'WBETH', 'CBBTC', 'BTC']
    assert [normalize_symbol(b) for b in bases] == ['STETHUSDT', 'WBETHUSDT', 'CBBTCUSDT', 'BTCUSDT']


def test_universe_accepts_lists_and_coin_mappings(tmp_path):
    plain = tmp_path / 'plain.json'
    plain.write_text(json.dumps(['btc', 'ETHUSDT', 'BTC']), encoding='utf-8')
    assert load_universe(str(plain)) == ['BTCUSDT', 'ETHUSDT']

    mapped = tmp_path / 'mapped.json'
    mapped.write_text(json.dumps({'coins': [{'symbol': 'sol'}, {'name': 'nameless'}, 'xrp']}), encoding='utf-8')
    assert load_universe(str(mapped)) == ['SOLUSDT', 'XRPUSDT']

    assert load_universe(str(tmp_path / 'missing.json')) == []


def test_journal_appends_one_line_per_anomaly_per_day(tmp_path):
    journal = AnomalyJournal(str(tmp_path / 'journal'))
    anomaly = AnomalyDetector(make_settings()).detect('BTCUSDT', anomaly_window(), T0)

    journal.record(anomaly, 'armed', T0 + 10)
    journal.record(anomaly, 'cancelled', T0 + 20)
    journal.record(anomaly, 'armed', T0 + 86400)

    assert journal.path_for(T0).name == 'anomalies-2023-11-15.jsonl'
    entries = journal.read_day(T0)
    assert [entry['status'] for entry in entries] == ['armed', 'cancelled']
    assert entries[0]['symbol'] == 'BTCUSDT'
    assert entries[0]['trade_type'] == 'Long'
    assert len(journal.read_day(T0 + 86400)) == 1
    assert journal.read_day(T0 - 86400) == []


def test_log_levels_resolve_from_names():
    assert resolve_level('debug') == 10
    assert resolve_level(None) == 20
    assert resolve_level('nonsense') == 20
    assert resolve_level(30) == 30
