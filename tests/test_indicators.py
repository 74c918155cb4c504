"""
Tests for the technical indicator library.

Run with: pytest tests/test_indicators.py -v
"""

import numpy as np
import pytest

from strategylab.indicators import (
    calculate_atr, calculate_bollinger_bands, calculate_ema, calculate_macd, calculate_obv,
    calculate_rsi, calculate_sma, calculate_stochastic, calculate_volume_profile,
    calculate_wma, is_above_average_volume,
)

from conftest import synthetic_closes


# =============================================================================
# MOVING AVERAGES
# =============================================================================

class TestMovingAverages:
    """SMA / EMA / WMA values and warmup sentinels"""

    def test_sma_values_and_warmup(self):
        """First period-1 values are the 0.0 sentinel"""
        result = calculate_sma(np.array([1.0, 2.0, 3.0, 4.0, 5.0]), 3)
        np.testing.assert_allclose(result, [0.0, 0.0, 2.0, 3.0, 4.0])

    def test_ema_seeded_with_sma(self):
        """EMA starts at the SMA of the first window, then smooths with k=2/(p+1)"""
        result = calculate_ema(np.array([1.0, 2.0, 3.0, 4.0, 5.0]), 3)
        np.testing.assert_allclose(result, [0.0, 0.0, 2.0, 3.0, 4.0])

    def test_ema_reacts_to_jump(self):
        result = calculate_ema(np.array([10.0, 10.0, 10.0, 20.0]), 3)
        assert result[2] == pytest.approx(10.0)
        assert result[3] == pytest.approx(15.0)

    def test_wma_weights_newest_heaviest(self):
        result = calculate_wma(np.array([1.0, 2.0, 3.0]), 3)
        assert result[:2].tolist() == [0.0, 0.0]
        assert result[2] == pytest.approx(14.0 / 6.0)

    def test_short_input_is_all_sentinel(self):
        """Input shorter than the period yields zeros of the same length"""
        for fn in (calculate_sma, calculate_ema, calculate_wma):
            result = fn(np.array([1.0, 2.0]), 5)
            assert len(result) == 2
            assert not result.any()

    @pytest.mark.parametrize("fn", [calculate_sma, calculate_ema, calculate_wma, calculate_rsi])
    def test_invalid_period_raises(self, fn):
        with pytest.raises(ValueError):
            fn(np.arange(10, dtype=float), 0)

    def test_output_length_matches_input(self):
        closes = synthetic_closes(120)
        for fn in (calculate_sma, calculate_ema, calculate_wma, calculate_rsi):
            assert len(fn(closes, 14)) == len(closes)


# =============================================================================
# OSCILLATORS
# =============================================================================

class TestRSI:
    """Wilder RSI"""

    def test_first_value_at_period(self):
        closes = synthetic_closes(40)
        rsi = calculate_rsi(closes, 14)
        assert not rsi[:14].any()
        assert 0.0 < rsi[14] <= 100.0

    def test_monotonic_rise_is_100(self):
        rsi = calculate_rsi(np.arange(1.0, 21.0), 14)
        assert rsi[14] == 100.0
        assert rsi[-1] == 100.0

    def test_monotonic_fall_is_0(self):
        rsi = calculate_rsi(np.arange(20.0, 0.0, -1.0), 14)
        assert rsi[14] == pytest.approx(0.0)

    def test_not_enough_data(self):
        assert not calculate_rsi(np.arange(14, dtype=float), 14).any()

    def test_bounded(self):
        rsi = calculate_rsi(synthetic_closes(300), 14)
        assert (rsi >= 0).all() and (rsi <= 100).all()


class TestMACD:
    """MACD line / signal / histogram"""

    def test_fast_must_be_below_slow(self):
        with pytest.raises(ValueError):
            calculate_macd(synthetic_closes(60), 26, 12, 9)
        with pytest.raises(ValueError):
            calculate_macd(synthetic_closes(60), 12, 12, 9)

    def test_warmup_indices(self):
        closes = synthetic_closes(80)
        macd, signal, hist = calculate_macd(closes, 12, 26, 9)
        assert not macd[:25].any()
        assert macd[25] != 0.0
        assert not signal[:33].any()
        assert not hist[:33].any()

    def test_signal_seeded_with_mean_of_line(self):
        closes = synthetic_closes(80)
        macd, signal, hist = calculate_macd(closes, 12, 26, 9)
        assert signal[33] == pytest.approx(macd[25:34].mean())
        np.testing.assert_allclose(hist[33:], macd[33:] - signal[33:])

    def test_short_series_all_zero(self):
        macd, signal, hist = calculate_macd(synthetic_closes(20), 12, 26, 9)
        assert not macd.any() and not signal.any() and not hist.any()


class TestStochastic:
    """%K / %D"""

    def test_flat_range_is_50(self):
        flat = np.full(20, 10.0)
        k, d = calculate_stochastic(flat, flat, flat, 14, 3)
        assert not k[:13].any()
        assert k[13] == 50.0
        assert not d[:15].any()
        assert d[15] == pytest.approx(50.0)

    def test_close_at_high_is_100(self):
        high = np.arange(1.0, 21.0) + 1
        low = np.arange(1.0, 21.0) - 1
        close = high.copy()
        k, _ = calculate_stochastic(high, low, close, 5, 3)
        assert k[4] == pytest.approx(100.0)

    def test_length_mismatch_raises(self):
        with pytest.raises(ValueError):
            calculate_stochastic(np.ones(10), np.ones(9), np.ones(10))


# =============================================================================
# VOLATILITY
# =============================================================================

class TestVolatility:
    """ATR and Bollinger Bands"""

    def test_atr_first_value_is_mean_true_range(self):
        n = 20
        close = np.full(n, 100.0)
        high = close + 1.0
        low = close - 1.0
        atr = calculate_atr(high, low, close, 14)
        assert not atr[:14].any()
        assert atr[14] == pytest.approx(2.0)
        assert atr[-1] == pytest.approx(2.0)

    def test_atr_uses_previous_close_gap(self):
        close = np.array([100.0, 100.0, 110.0])
        high = np.array([101.0, 101.0, 111.0])
        low = np.array([99.0, 99.0, 109.0])
        atr = calculate_atr(high, low, close, 2)
        # TR[1]=2, TR[2]=max(2, |111-100|, |109-100|)=11
        assert atr[2] == pytest.approx(6.5)

    def test_bollinger_flat_series(self):
        """Zero-width bands: bandwidth 0 and %B pinned at 0.5"""
        upper, middle, lower, bandwidth, percent_b = calculate_bollinger_bands(np.full(25, 50.0), 20, 2.0)
        assert upper[19] == middle[19] == lower[19] == 50.0
        assert bandwidth[19] == 0.0
        assert percent_b[19] == 0.5
        assert not percent_b[:19].any()

    def test_bollinger_band_ordering(self):
        closes = synthetic_closes(100)
        upper, middle, lower, bandwidth, _ = calculate_bollinger_bands(closes, 20, 2.0)
        valid = slice(19, None)
        assert (upper[valid] >= middle[valid]).all()
        assert (middle[valid] >= lower[valid]).all()
        np.testing.assert_allclose(middle[valid], calculate_sma(closes, 20)[valid])
        assert (bandwidth[valid] > 0).all()


# =============================================================================
# VOLUME
# =============================================================================

class TestVolume:
    """OBV and volume profile"""

    def test_obv_accumulates_by_direction(self):
        obv = calculate_obv(np.array([10.0, 11.0, 10.0, 10.0]), np.array([100.0, 200.0, 300.0, 400.0]))
        np.testing.assert_allclose(obv, [100.0, 300.0, 0.0, 0.0])

    def test_obv_empty(self):
        assert len(calculate_obv(np.array([]), np.array([]))) == 0

    def test_relative_volume(self):
        volume = np.array([100.0, 100.0, 100.0, 300.0])
        volume_ma, relative = calculate_volume_profile(volume, 3)
        assert not relative[:2].any()
        assert relative[2] == pytest.approx(1.0)
        assert volume_ma[3] == pytest.approx(500.0 / 3)
        assert relative[3] == pytest.approx(1.8)

    def test_above_average_threshold(self):
        assert is_above_average_volume(1.2)
        assert not is_above_average_volume(1.19)
