# 定期スイープ
"""
PeriodicSweep: 外部の時計から周期的に呼ばれる実験メンテナンス処理

周期:
- 1時間ごと: 自動勝者選択が有効な running 実験の完了判定
    - end_date を過ぎていれば、その時点の勝者（無しも可）で強制完了
    - それ以外は勝者が決まった場合のみ完了
- 1日ごと: end_date から保持期間（90日）を過ぎた completed 実験を archived へ
- 1日ごと: running 実験のサマリーを生成して通知先へ渡す（状態は変更しない）

1件の実験の失敗はログに残し、残りの実験の処理を止めない。
スイープは単一インスタンスでの実行を前提とする。
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional
from uuid import UUID

from src.config.experiment_config import ExperimentConfig
from src.experimentation.clock import Clock
from src.experimentation.lifecycle import LifecycleManager
from src.experimentation.models import TestStatus, TestSummary
from src.experimentation.store import ExperimentStore


class SummaryNotifier(ABC):
    """日次サマリーの通知先"""

    @abstractmethod
    async def notify(self, summaries: List[TestSummary]) -> None:
        """サマリーを通知"""


class NullSummaryNotifier(SummaryNotifier):
    """何もしない通知先（デフォルト）"""

    async def notify(self, summaries: List[TestSummary]) -> None:
        return None


class LoggingSummaryNotifier(SummaryNotifier):
    """サマリーをログに出力する通知先"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    async def notify(self, summaries: List[TestSummary]) -> None:
        for summary in summaries:
            self.logger.info(summary.message)


@dataclass
class SweepReport:
    """完了判定スイープの結果"""
    checked: int = 0
    completed: List[UUID] = field(default_factory=list)
    failed: List[UUID] = field(default_factory=list)


class PeriodicSweep:
    """定期スイープクラス

    使用例:
        sweep = PeriodicSweep(manager, store, clock)

        # 手動実行
        report = await sweep.check_test_completion()
        archived = await sweep.archive_old_tests()

        # 周期実行の登録
        sweep.register()

    Attributes:
        manager: ライフサイクル管理
        store: 実験ストア
        clock: 時計
        config: 実験エンジン設定
        notifier: 日次サマリーの通知先
        logger: ロガー
    """

    def __init__(
        self,
        manager: LifecycleManager,
        store: ExperimentStore,
        clock: Clock,
        config: Optional[ExperimentConfig] = None,
        notifier: Optional[SummaryNotifier] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.manager = manager
        self.store = store
        self.clock = clock
        self.config = config or ExperimentConfig()
        self.notifier = notifier or NullSummaryNotifier()
        self.logger = logger or logging.getLogger(__name__)

    async def check_test_completion(self) -> SweepReport:
        """自動勝者選択が有効な running 実験の完了判定"""
        tests = await asyncio.to_thread(
            self.store.list_tests,
            status=TestStatus.RUNNING,
            auto_select_winner=True,
            limit=None,
        )

        report = SweepReport(checked=len(tests))
        now = self.clock.now()

        for test in tests:
            try:
                if test.end_date is not None and test.end_date <= now:
                    completed = await self.manager.complete(test.id)
                    report.completed.append(test.id)
                    self.logger.info(
                        f"終了日時を過ぎた実験を完了: test_id={test.id}, "
                        f"winner_id={completed.winner_id}"
                    )
                    continue

                decision = await self.manager.check_for_winner(test.id)
                if decision.has_winner:
                    report.completed.append(test.id)
            except Exception as e:
                report.failed.append(test.id)
                self.logger.error(f"実験の完了判定に失敗: test_id={test.id}, error={e}")

        self.logger.info(
            f"完了判定スイープ: checked={report.checked}, "
            f"completed={len(report.completed)}, failed={len(report.failed)}"
        )
        return report

    async def archive_old_tests(self) -> int:
        """保持期間を過ぎた completed 実験を archived にする

        end_date が無い実験はアーカイブしない。

        Returns:
            アーカイブした件数
        """
        cutoff = self.clock.now() - timedelta(days=self.config.archive_after_days)
        archived = await asyncio.to_thread(self.store.archive_completed_before, cutoff)

        if archived:
            self.logger.info(f"実験をアーカイブ: count={archived}, cutoff={cutoff.isoformat()}")
        return archived

    async def generate_daily_summary(self) -> List[TestSummary]:
        """running 実験のサマリーを生成して通知先へ渡す

        通知先の失敗は無視する。
        """
        tests = await asyncio.to_thread(
            self.store.list_tests,
            status=TestStatus.RUNNING,
            limit=None,
        )

        summaries: List[TestSummary] = []
        for test in tests:
            try:
                decision = self.manager.winner_engine.decide(test)
            except Exception as e:
                self.logger.error(f"サマリーの生成に失敗: test_id={test.id}, error={e}")
                continue

            summaries.append(
                TestSummary(
                    test_id=test.id,
                    test_name=test.name,
                    owner_id=test.owner_id,
                    total_impressions=sum(v.impressions for v in test.variants),
                    total_conversions=sum(v.conversions for v in test.variants),
                    has_winner=decision.has_winner,
                    winner_name=decision.winner_name,
                )
            )

        try:
            await self.notifier.notify(summaries)
        except Exception as e:
            self.logger.warning(f"日次サマリーの通知に失敗: error={e}")

        self.logger.info(f"日次サマリーを生成: tests={len(summaries)}")
        return summaries

    def register(self, clock: Optional[Clock] = None) -> None:
        """3つの周期処理を時計に登録"""
        clock = clock or self.clock
        clock.every(self.config.winner_check_interval_seconds, self.check_test_completion)
        clock.every(self.config.archive_interval_seconds, self.archive_old_tests)
        clock.every(self.config.summary_interval_seconds, self.generate_daily_summary)
