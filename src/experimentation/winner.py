# 勝者判定
"""
WinnerDecisionEngine: 統計結果と実験ポリシーから勝者を判定する

判定規則:
1. コントロールのコンバージョン数が min_sample_size 未満なら勝者なし
2. 有意かつコントロールより率が高いバリアントのうち、最も率が高いものが勝者
   （同率は保存順で先のもの）
3. コントロール以外の全バリアントが有意かつコントロールより率が低ければ、
   コントロールが勝者
4. それ以外は勝者なし

規則3はコントロールのサンプル数だけを見ており、各バリアントのサンプル数は
確認しない。
"""

import logging
import math
from datetime import datetime
from typing import List, Optional, Sequence

from src.experimentation.models import (
    ABTest,
    TestResult,
    VariantResult,
    WinnerDecision,
)
from src.experimentation.statistics import StatisticalAnalyzer


class WinnerDecisionEngine:
    """勝者判定クラス

    使用例:
        engine = WinnerDecisionEngine(StatisticalAnalyzer())

        decision = engine.decide(test)
        if decision.has_winner:
            print(decision.winner_name)

        result = engine.build_results(test)
        print(result.recommendation)

    Attributes:
        analyzer: 統計分析
        logger: ロガー
    """

    def __init__(
        self,
        analyzer: Optional[StatisticalAnalyzer] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.analyzer = analyzer or StatisticalAnalyzer()
        self.logger = logger or logging.getLogger(__name__)

    def evaluate(
        self,
        test: ABTest,
        variants: Sequence[VariantResult],
    ) -> WinnerDecision:
        """バリアントの統計結果から勝者を判定"""
        control = next((v for v in variants if v.is_control), None)
        if control is None:
            return WinnerDecision(has_winner=False)

        if control.conversions < test.min_sample_size:
            return WinnerDecision(has_winner=False)

        treatments = [v for v in variants if not v.is_control]

        better = [
            v for v in treatments
            if v.is_significant and v.conversion_rate > control.conversion_rate
        ]
        if better:
            # max は同率なら最初の要素を返す
            best = max(better, key=lambda v: v.conversion_rate)
            return WinnerDecision(
                has_winner=True,
                winner_id=best.variant_id,
                winner_name=best.variant_name,
            )

        if treatments and all(
            v.is_significant and v.conversion_rate < control.conversion_rate
            for v in treatments
        ):
            return WinnerDecision(
                has_winner=True,
                winner_id=control.variant_id,
                winner_name=control.variant_name,
            )

        return WinnerDecision(has_winner=False)

    def decide(self, test: ABTest) -> WinnerDecision:
        """実験の現在のカウンターから勝者を判定"""
        snapshots = [v.to_snapshot() for v in test.variants]
        results = self.analyzer.analyze_variants(snapshots, test.confidence_level)
        return self.evaluate(test, results)

    def build_results(
        self,
        test: ABTest,
        now: Optional[datetime] = None,
        include_bayesian: bool = True,
    ) -> TestResult:
        """実験の分析結果を組み立てる

        Args:
            test: バリアント付きの実験
            now: 現在日時（有意到達日数の推定に使用）
            include_bayesian: ベイズ勝率を計算するか

        Returns:
            TestResult: バリアント別統計、勝者、検出力、推奨事項を含む結果
        """
        now = now or datetime.now()
        snapshots = [v.to_snapshot() for v in test.variants]
        variant_results = self.analyzer.analyze_variants(snapshots, test.confidence_level)

        if include_bayesian and snapshots:
            probabilities = self.analyzer.bayesian_win_probability(snapshots)
            for result in variant_results:
                result.probability_to_be_best = probabilities.get(result.variant_id)

        decision = self.evaluate(test, variant_results)

        total_impressions = sum(v.impressions for v in test.variants)
        total_conversions = sum(v.conversions for v in test.variants)
        power = self.analyzer.statistical_power(snapshots, test.min_sample_size)

        recommendation = self.recommendation(
            variant_results,
            decision,
            power,
            total_conversions,
            test.min_sample_size,
        )

        days_to_significance = None
        if not decision.has_winner:
            days_to_significance = self.estimate_days_to_significance(
                test, total_conversions, now
            )

        return TestResult(
            test_id=test.id,
            test_name=test.name,
            status=test.status,
            primary_metric=test.primary_metric,
            confidence_level=test.confidence_level,
            min_sample_size=test.min_sample_size,
            total_impressions=total_impressions,
            total_conversions=total_conversions,
            variants=variant_results,
            has_winner=decision.has_winner,
            winner_id=decision.winner_id,
            winner_name=decision.winner_name,
            statistical_power=power,
            recommendation=recommendation,
            days_to_significance=days_to_significance,
            sample_ratio_p_value=self.analyzer.sample_ratio_p_value(
                [v.impressions for v in test.variants],
                [v.traffic_allocation for v in test.variants],
            ),
        )

    def recommendation(
        self,
        variants: List[VariantResult],
        decision: WinnerDecision,
        statistical_power: float,
        total_conversions: int,
        min_sample_size: int,
    ) -> str:
        """人が読むための推奨メッセージを生成"""
        if decision.has_winner:
            winner = next(
                (v for v in variants if v.variant_id == decision.winner_id), None
            )
            if winner is None or winner.is_control:
                return "The control version performs best. No changes recommended."

            confidence = (1.0 - (winner.p_value or 0.0)) * 100
            if winner.relative_improvement is None:
                return (
                    f'Winner found: "{winner.variant_name}" outperforms the control '
                    f"with {confidence:.0f}% confidence. Consider implementing this variant."
                )
            return (
                f'Winner found: "{winner.variant_name}" shows a '
                f"{winner.relative_improvement * 100:.1f}% improvement over the control "
                f"with {confidence:.0f}% confidence. Consider implementing this variant."
            )

        if total_conversions < min_sample_size * 0.5:
            return (
                f"Insufficient data. Need at least {min_sample_size} conversions per "
                f"variant for statistical significance. Continue running the test."
            )

        if statistical_power < 0.5:
            return (
                "Low statistical power. Consider increasing traffic or running longer "
                "to detect meaningful differences."
            )

        return "No significant winner yet. Continue running the test to gather more data."

    def estimate_days_to_significance(
        self,
        test: ABTest,
        total_conversions: int,
        now: datetime,
    ) -> Optional[int]:
        """現在のコンバージョンペースから有意到達までの日数を推定

        開始日時が無い、またはコンバージョンが無い場合は None。
        """
        if test.start_date is None:
            return None

        elapsed_days = (now - test.start_date).total_seconds() / 86400
        days_running = max(1, math.ceil(elapsed_days))

        conversions_per_day = total_conversions / days_running
        if conversions_per_day == 0:
            return None

        needed = test.min_sample_size * len(test.variants) - total_conversions
        if needed <= 0:
            return 0

        return math.ceil(needed / conversions_per_day)
