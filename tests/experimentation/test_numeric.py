# 数値計算プリミティブ テスト
"""
numeric モジュールの単体テスト

検証観点:
- 正規分布CDFの既知値と対称性
- z値の対応表と未登録水準のデフォルト
- サンプリングの値域と、シード付き乱数源での再現性
"""

import random
import statistics

import pytest

from src.experimentation.numeric import (
    DEFAULT_Z_SCORE,
    beta_sample,
    gamma_sample,
    normal_cdf,
    normal_sample,
    z_score,
)


# ============================================================================
# normal_cdf
# ============================================================================


class TestNormalCdf:
    """正規分布CDFのテスト"""

    def test_center_is_half(self):
        """x=0 で 0.5"""
        assert normal_cdf(0.0) == pytest.approx(0.5, abs=1e-7)

    def test_known_values(self):
        """既知の値と一致する"""
        assert normal_cdf(1.96) == pytest.approx(0.975, abs=1e-4)
        assert normal_cdf(1.0) == pytest.approx(0.8413, abs=1e-4)
        assert normal_cdf(-1.645) == pytest.approx(0.05, abs=1e-3)

    def test_symmetry(self):
        """Φ(-x) = 1 - Φ(x)"""
        for x in (0.3, 1.2, 2.5, 4.0):
            assert normal_cdf(-x) == pytest.approx(1.0 - normal_cdf(x), abs=1e-7)

    def test_extreme_values_are_bounded(self):
        """極端な値でも [0, 1] に収まる"""
        assert 0.0 <= normal_cdf(-40.0) <= 1e-7
        assert 1.0 - 1e-7 <= normal_cdf(40.0) <= 1.0


# ============================================================================
# z_score
# ============================================================================


class TestZScore:
    """信頼水準 → z値のテスト"""

    @pytest.mark.parametrize(
        "level,expected",
        [(0.80, 1.282), (0.85, 1.44), (0.90, 1.645), (0.95, 1.96), (0.99, 2.576)],
    )
    def test_table_values(self, level, expected):
        assert z_score(level) == expected

    def test_rounds_to_two_decimals(self):
        """小数第2位に丸めてから引く"""
        assert z_score(0.9001) == 1.645
        assert z_score(0.949999) == 1.96

    def test_unlisted_level_defaults(self):
        """表にない水準は 1.96"""
        assert z_score(0.93) == DEFAULT_Z_SCORE
        assert z_score(0.5) == DEFAULT_Z_SCORE


# ============================================================================
# サンプリング
# ============================================================================


class TestSampling:
    """正規・ガンマ・ベータ分布のサンプリング"""

    def test_normal_sample_moments(self):
        """平均0、標準偏差1に近い"""
        rng = random.Random(1)
        samples = [normal_sample(rng) for _ in range(20000)]
        assert statistics.mean(samples) == pytest.approx(0.0, abs=0.05)
        assert statistics.pstdev(samples) == pytest.approx(1.0, abs=0.05)

    @pytest.mark.parametrize("shape", [0.5, 1.0, 3.0, 50.0])
    def test_gamma_sample_mean_matches_shape(self, shape):
        """Gamma(shape, 1) の平均は shape"""
        rng = random.Random(2)
        samples = [gamma_sample(shape, rng) for _ in range(10000)]
        assert all(s > 0 for s in samples)
        assert statistics.mean(samples) == pytest.approx(shape, rel=0.06)

    @pytest.mark.parametrize("shape", [0.0, -1.0])
    def test_gamma_sample_rejects_non_positive_shape(self, shape):
        with pytest.raises(ValueError):
            gamma_sample(shape, random.Random(0))

    def test_beta_sample_in_unit_interval(self):
        """ベータサンプルは (0, 1) に収まり、平均は a/(a+b)"""
        rng = random.Random(3)
        samples = [beta_sample(9, 91, rng) for _ in range(10000)]
        assert all(0.0 < s < 1.0 for s in samples)
        assert statistics.mean(samples) == pytest.approx(0.09, abs=0.005)

    def test_seeded_rng_is_reproducible(self):
        """同じシードなら同じ系列"""
        first = [beta_sample(3, 7, random.Random(42)) for _ in range(5)]
        second = [beta_sample(3, 7, random.Random(42)) for _ in range(5)]
        assert first == second
