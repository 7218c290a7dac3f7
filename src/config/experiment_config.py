# A/Bテスト実験エンジン パラメータ設定
# 対象: 実験ライフサイクル、統計分析、定期スイープ

import os
from dataclasses import dataclass


@dataclass
class ExperimentConfig:
    """A/Bテスト実験エンジンのパラメータ設定

    区分:
    - 実験作成時のデフォルト値と許容範囲
    - 統計分析（ベイズシミュレーション、検出力）
    - 定期スイープの実行間隔とアーカイブ保持期間

    環境変数:
        AB_TEST_ARCHIVE_AFTER_DAYS: アーカイブまでの日数（オプション）
        AB_TEST_BAYESIAN_SIMULATIONS: モンテカルロ試行回数（オプション）

    使用例:
        config = ExperimentConfig()
        config = ExperimentConfig(archive_after_days=30)
    """

    # === 実験作成 ===
    default_confidence_level: float = 0.95
    """信頼水準のデフォルト値"""

    min_confidence_level: float = 0.80
    """信頼水準の下限"""

    max_confidence_level: float = 0.99
    """信頼水準の上限"""

    default_min_sample_size: int = 100
    """勝者判定に必要なコントロールの最小コンバージョン数"""

    min_sample_size_floor: int = 100
    """min_sample_size に指定できる最小値"""

    min_variants: int = 2
    """実験あたりの最小バリアント数"""

    allocation_tolerance: float = 0.01
    """トラフィック配分合計（100%）の許容誤差"""

    # === 統計分析 ===
    bayesian_simulations: int = 10000
    """ベイズ勝率のモンテカルロ試行回数"""

    min_control_conversions_for_power: int = 10
    """検出力を計算するためのコントロール最小コンバージョン数"""

    # === 定期スイープ ===
    archive_after_days: int = 90
    """完了からアーカイブまでの保持期間（日）"""

    winner_check_interval_seconds: int = 3600
    """完了判定スイープの間隔（1時間）"""

    archive_interval_seconds: int = 86400
    """アーカイブスイープの間隔（1日）"""

    summary_interval_seconds: int = 86400
    """日次サマリーの間隔（1日）"""

    # === 一覧取得 ===
    default_list_limit: int = 100
    """一覧取得件数のデフォルト上限"""

    def __post_init__(self) -> None:
        """初期化後の処理: 環境変数から設定を取得"""
        env_archive_days = os.getenv("AB_TEST_ARCHIVE_AFTER_DAYS")
        if env_archive_days:
            self.archive_after_days = int(env_archive_days)

        env_simulations = os.getenv("AB_TEST_BAYESIAN_SIMULATIONS")
        if env_simulations:
            self.bayesian_simulations = int(env_simulations)

    def validate(self) -> None:
        """設定値を検証

        Raises:
            ValueError: 値が無効な場合
        """
        if not (0.0 < self.min_confidence_level <= self.max_confidence_level < 1.0):
            raise ValueError(
                f"confidence level bounds are invalid: "
                f"{self.min_confidence_level}-{self.max_confidence_level}"
            )

        if not (
            self.min_confidence_level
            <= self.default_confidence_level
            <= self.max_confidence_level
        ):
            raise ValueError(
                f"default_confidence_level must be within bounds, "
                f"got {self.default_confidence_level}"
            )

        if self.default_min_sample_size < self.min_sample_size_floor:
            raise ValueError(
                f"default_min_sample_size must be >= {self.min_sample_size_floor}, "
                f"got {self.default_min_sample_size}"
            )

        if self.min_variants < 2:
            raise ValueError(f"min_variants must be >= 2, got {self.min_variants}")

        if self.allocation_tolerance < 0:
            raise ValueError(
                f"allocation_tolerance must be non-negative, got {self.allocation_tolerance}"
            )

        if self.bayesian_simulations <= 0:
            raise ValueError(
                f"bayesian_simulations must be positive, got {self.bayesian_simulations}"
            )

        if self.archive_after_days <= 0:
            raise ValueError(
                f"archive_after_days must be positive, got {self.archive_after_days}"
            )

        for name in (
            "winner_check_interval_seconds",
            "archive_interval_seconds",
            "summary_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")


# デフォルト設定のインスタンス
experiment_config = ExperimentConfig()
