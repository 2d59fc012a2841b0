import sys

sys.path.insert(0, '.')

from strategy.anomaly_detector import AnomalyDetector, CooldownTracker
from strategy.models import TradeType
from tests.engine_fixtures import anomaly_window, candle, make_settings

NOW = 1_700_010_000.0


def test_short_history_never_flags():
    detector = AnomalyDetector(make_settings())
    window = anomaly_window()
    for size in range(len(window)):
        assert detector.detect('BTCUSDT', window[:size], NOW) is None
    assert detector.cooldowns.active(NOW) == []


def test_volume_spike_with_price_drop_is_long():
    detector = AnomalyDetector(make_settings())
    anomaly = detector.detect('BTCUSDT', anomaly_window(), NOW)
    assert anomaly is not None
    assert anomaly.trade_type is TradeType.LONG
    assert anomaly.volume_leverage == 9.0
    assert anomaly.historical_volume == 100.0
    assert anomaly.historical_price == 100.0
    assert anomaly.anomaly_close == 99.2
    assert detector.cooldowns.is_cooling('BTCUSDT', NOW)


def test_volume_spike_with_price_rise_is_short():
    detector = AnomalyDetector(make_settings())
    anomaly = detector.detect('ETHUSDT', anomaly_window(anomaly_price=100.8, high=101.0, low=100.6), NOW)
    assert anomaly.trade_type is TradeType.SHORT


def test_volume_at_threshold_is_not_an_anomaly():
    detector = AnomalyDetector(make_settings())
    assert detector.detect('BTCUSDT', anomaly_window(anomaly_volume=300.0), NOW) is None
    # the volume check never fired, so no cooldown either
    assert not detector.cooldowns.is_cooling('BTCUSDT', NOW)


def test_spike_without_displacement_cools_down_without_watchlisting():
    detector = AnomalyDetector(make_settings())
    window = anomaly_window(anomaly_price=100.2, high=100.4, low=100.0)
    assert detector.detect('BTCUSDT', window, NOW) is None
    assert detector.cooldowns.is_cooling('BTCUSDT', NOW)


def test_cooldown_blocks_until_expiry():
    settings = make_settings()
    detector = AnomalyDetector(settings)
    assert detector.detect('BTCUSDT', anomaly_window(), NOW) is not None
    assert detector.detect('BTCUSDT', anomaly_window(), NOW + settings.cooldown_seconds - 1) is None
    assert detector.detect('BTCUSDT', anomaly_window(), NOW + settings.cooldown_seconds) is not None


def test_unclosed_or_tracked_windows_are_skipped():
    detector = AnomalyDetector(make_settings())
    window = anomaly_window()
    window[-2] = candle(6, 99.2, 900.0, high=99.5, low=99.0, closed=False)
    assert detector.detect('BTCUSDT', window, NOW) is None
    assert detector.detect('BTCUSDT', anomaly_window(), NOW, tracked=True) is None
    assert not detector.cooldowns.is_cooling('BTCUSDT', NOW)


def test_only_the_last_window_counts():
    detector = AnomalyDetector(make_settings())
    old_noise = [candle(-i, 100.0, 50_000.0) for i in range(5, 0, -1)]
    anomaly = detector.detect('BTCUSDT', old_noise + anomaly_window(), NOW)
    assert anomaly is not None
    assert anomaly.historical_volume == 100.0


def test_cooldown_tracker_prunes_expired_entries():
    tracker = CooldownTracker(duration_s=60)
    tracker.mark('A', 0.0)
    tracker.mark('B', 30.0)
    assert tracker.prune(61.0) == 1
    assert tracker.active(61.0) == ['B']
    assert tracker.expires_at('B') == 90.0
