# 統計分析
"""
StatisticalAnalyzer: コンバージョン率の推測統計

設計方針:
- 副作用なし: カウンターのスナップショットだけを入力に取る
- ゼロサンプル耐性: 計算できない場合は中立値（SE=0, CI=(0, 0), p=1）を返す
- 再現性: ベイズシミュレーションの乱数源は注入可能

提供する統計量:
- 標準誤差、信頼区間
- 2標本比率の z 検定（プールした分散、両側）
- 検出力（Cohen's h による近似）
- ベイズ勝率（Beta 事後分布上のモンテカルロ）
- 適合度カイ二乗検定（配分と実表示数のずれの検出）
- 必要サンプルサイズ
"""

import logging
import math
import random
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from scipy import stats

from src.config.experiment_config import ExperimentConfig
from src.experimentation.models import VariantResult, VariantSnapshot
from src.experimentation.numeric import beta_sample, normal_cdf, z_score


def _clamp_proportion(value: float) -> float:
    """比率を [0, 1] に収める

    遅れて届いたコンバージョンや1セッション内の複数イベント
    （approval と sign など）で conversions > impressions になり得る。
    """
    return min(1.0, max(0.0, value))


class StatisticalAnalyzer:
    """コンバージョン率の統計分析クラス

    使用例:
        analyzer = StatisticalAnalyzer(ExperimentConfig(), rng=random.Random(42))

        p_value = analyzer.two_proportion_p_value(80, 1000, 50, 1000)
        lower, upper = analyzer.confidence_interval(0.08, 1000, 0.95)
        probabilities = analyzer.bayesian_win_probability(snapshots)

    Attributes:
        config: 実験エンジン設定
        rng: モンテカルロ用の乱数源
        logger: ロガー
    """

    def __init__(
        self,
        config: Optional[ExperimentConfig] = None,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ExperimentConfig()
        self.rng = rng or random.Random()
        self.logger = logger or logging.getLogger(__name__)

    def standard_error(self, proportion: float, sample_size: int) -> float:
        """比率の標準誤差 sqrt(p(1-p)/n)。n=0 なら 0。p は [0, 1] に切り詰める。"""
        if sample_size == 0:
            return 0.0
        proportion = _clamp_proportion(proportion)
        return math.sqrt(proportion * (1.0 - proportion) / sample_size)

    def confidence_interval(
        self,
        proportion: float,
        sample_size: int,
        confidence_level: float = 0.95,
    ) -> Tuple[float, float]:
        """比率の信頼区間 p ± z·SE を [0, 1] に切り詰めて返す"""
        if sample_size == 0:
            return 0.0, 0.0

        proportion = _clamp_proportion(proportion)
        margin = z_score(confidence_level) * self.standard_error(proportion, sample_size)
        return max(0.0, proportion - margin), min(1.0, proportion + margin)

    def two_proportion_p_value(
        self,
        conversions_a: int,
        impressions_a: int,
        conversions_b: int,
        impressions_b: int,
    ) -> float:
        """2標本比率の z 検定による両側 p 値

        どちらかのサンプルが空、または標準誤差が0の場合は 1 を返す。
        """
        if impressions_a == 0 or impressions_b == 0:
            return 1.0

        p1 = _clamp_proportion(conversions_a / impressions_a)
        p2 = _clamp_proportion(conversions_b / impressions_b)
        pooled = _clamp_proportion(
            (conversions_a + conversions_b) / (impressions_a + impressions_b)
        )

        variance = max(pooled * (1.0 - pooled), 0.0)
        se = math.sqrt(variance * (1.0 / impressions_a + 1.0 / impressions_b))
        if se == 0:
            return 1.0

        z = abs(p1 - p2) / se
        return 2.0 * (1.0 - normal_cdf(z))

    def statistical_power(
        self,
        variants: Sequence[VariantSnapshot],
        min_sample_size: Optional[int] = None,
    ) -> float:
        """観測された効果量での検出力の近似値

        コントロールのコンバージョンが少ない（既定10件未満）場合は 0。

        Args:
            variants: バリアントのスナップショット
            min_sample_size: 実験の最小サンプル数（WinnerDecisionEngine が
                実験設定をそのまま渡す）。検出力は観測済みの表示数から求めるので
                値は結果に影響しない。

        Returns:
            [0, 1] の検出力
        """
        control = next((v for v in variants if v.is_control), None)
        if control is None or control.conversions < self.config.min_control_conversions_for_power:
            return 0.0

        treatments = [v for v in variants if not v.is_control]
        if not treatments:
            return 0.0

        avg_treatment_rate = _clamp_proportion(
            sum(t.conversion_rate for t in treatments) / len(treatments)
        )
        control_rate = _clamp_proportion(control.conversion_rate)

        # Cohen's h
        h = 2.0 * math.asin(math.sqrt(avg_treatment_rate)) - 2.0 * math.asin(
            math.sqrt(control_rate)
        )

        avg_impressions = sum(v.impressions for v in variants) / len(variants)
        ncp = abs(h) * math.sqrt(avg_impressions / 2.0)

        power = normal_cdf(ncp - 1.96)
        return min(1.0, max(0.0, power))

    def bayesian_win_probability(
        self,
        variants: Sequence[VariantSnapshot],
        simulations: Optional[int] = None,
    ) -> Dict[UUID, float]:
        """各バリアントが最良である確率（モンテカルロ）

        各試行で Beta(conversions+1, impressions-conversions+1) から1つずつ
        サンプリングし、最大値を取ったバリアントを勝ちとして数える。
        """
        if not variants:
            return {}

        simulations = simulations or self.config.bayesian_simulations
        wins: Dict[UUID, int] = {v.variant_id: 0 for v in variants}

        # 遅れて届いたコンバージョンで conversions > impressions になり得る
        params = [
            (
                v.variant_id,
                v.conversions + 1,
                max(v.impressions - v.conversions, 0) + 1,
            )
            for v in variants
        ]

        for _ in range(simulations):
            best_id = None
            best_value = -1.0
            for variant_id, alpha, beta in params:
                sample = beta_sample(alpha, beta, self.rng)
                if sample > best_value:
                    best_value = sample
                    best_id = variant_id
            wins[best_id] += 1

        self.logger.debug(
            f"ベイズ勝率を計算: variants={len(params)}, simulations={simulations}"
        )

        return {variant_id: count / simulations for variant_id, count in wins.items()}

    def relative_improvement(
        self,
        rate: float,
        control_rate: float,
    ) -> Optional[float]:
        """コントロール比の相対改善率（比率）。コントロール率が0なら None。"""
        if control_rate == 0:
            return None
        return (rate - control_rate) / control_rate

    def chi_square(
        self,
        observed: Sequence[float],
        expected: Sequence[float],
    ) -> Tuple[float, float]:
        """適合度カイ二乗検定

        Returns:
            (chi_square, p_value)。長さ不一致や2要素未満は (0.0, 1.0)。
        """
        if len(observed) != len(expected) or len(observed) < 2:
            return 0.0, 1.0

        chi_square = sum(
            (o - e) ** 2 / e for o, e in zip(observed, expected) if e > 0
        )
        df = len(observed) - 1
        p_value = float(stats.chi2.sf(chi_square, df))

        return float(chi_square), p_value

    def sample_ratio_p_value(
        self,
        impressions: Sequence[int],
        allocations: Sequence[float],
    ) -> Optional[float]:
        """配分率に対する実表示数のずれ（sample ratio mismatch）の p 値

        表示が1件もない場合は None。
        """
        total = sum(impressions)
        if total == 0:
            return None

        expected = [total * allocation / 100.0 for allocation in allocations]
        _, p_value = self.chi_square(impressions, expected)
        return p_value

    def min_sample_size(
        self,
        baseline_rate: float,
        minimum_detectable_effect: float,
        power: float = 0.8,
        alpha: float = 0.05,
    ) -> int:
        """グループあたりの必要サンプルサイズ

        Args:
            baseline_rate: ベースラインのコンバージョン率
            minimum_detectable_effect: 検出したい相対変化（%）
            power: 検出力
            alpha: 有意水準（両側）

        Returns:
            必要サンプルサイズ（下限 100）
        """
        target_rate = min(1.0, baseline_rate * (1.0 + minimum_detectable_effect / 100.0))

        h = 2.0 * math.asin(math.sqrt(target_rate)) - 2.0 * math.asin(
            math.sqrt(baseline_rate)
        )
        if h == 0:
            return self.config.min_sample_size_floor

        z_alpha = stats.norm.ppf(1.0 - alpha / 2.0)
        z_beta = stats.norm.ppf(power)

        n = math.ceil(2.0 * ((z_alpha + z_beta) / h) ** 2)
        return max(self.config.min_sample_size_floor, n)

    def analyze_variants(
        self,
        variants: Sequence[VariantSnapshot],
        confidence_level: float,
    ) -> List[VariantResult]:
        """バリアントごとの統計結果を計算

        コントロール以外のバリアントには、コントロールとの比較
        （相対改善率・p 値・有意性）を付与する。
        """
        control = next((v for v in variants if v.is_control), None)
        results: List[VariantResult] = []

        for variant in variants:
            rate = variant.conversion_rate
            result = VariantResult(
                variant_id=variant.variant_id,
                variant_name=variant.variant_name,
                is_control=variant.is_control,
                impressions=variant.impressions,
                conversions=variant.conversions,
                conversion_rate=rate,
                avg_value=(
                    variant.total_value / variant.conversions
                    if variant.conversions > 0 else 0.0
                ),
                total_value=variant.total_value,
                standard_error=self.standard_error(rate, variant.impressions),
                confidence_interval=self.confidence_interval(
                    rate, variant.impressions, confidence_level
                ),
            )

            if not variant.is_control and control is not None:
                result.relative_improvement = self.relative_improvement(
                    rate, control.conversion_rate
                )
                result.p_value = self.two_proportion_p_value(
                    variant.conversions,
                    variant.impressions,
                    control.conversions,
                    control.impressions,
                )
                result.is_significant = result.p_value < 1.0 - confidence_level

            results.append(result)

        return results
