# 実験ライフサイクル管理
"""
LifecycleManager: 実験の作成・状態遷移・配分変更と、割り当て・記録・分析の窓口

状態遷移:
    draft → running ⇄ paused → completed → archived

- start: draft / paused → running（start_date 未設定なら設定）
- pause: running → paused
- complete: running / paused → completed（end_date、勝者を設定）
- archived への遷移は PeriodicSweep が行う
- completed / archived の実験は設定を変更できない
"""

import asyncio
import logging
import math
import random
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID, uuid4

from src.config.experiment_config import ExperimentConfig
from src.experimentation.assignment import AssignmentEngine
from src.experimentation.clock import AsyncioClock, Clock
from src.experimentation.conversion import ConversionRecorder, WinnerCheck
from src.experimentation.errors import (
    ExperimentNotFoundError,
    ExperimentStateError,
    ExperimentValidationError,
)
from src.experimentation.models import (
    ABTest,
    AllocationUpdate,
    AssignmentResult,
    ConversionEvent,
    CreateTestRequest,
    TestPatch,
    TestResult,
    TestStatus,
    Variant,
    WinnerDecision,
)
from src.experimentation.statistics import StatisticalAnalyzer
from src.experimentation.store import ExperimentStore
from src.experimentation.winner import WinnerDecisionEngine


# 許可される状態遷移
ALLOWED_TRANSITIONS: Dict[TestStatus, frozenset] = {
    TestStatus.DRAFT: frozenset({TestStatus.RUNNING}),
    TestStatus.RUNNING: frozenset({TestStatus.PAUSED, TestStatus.COMPLETED}),
    TestStatus.PAUSED: frozenset({TestStatus.RUNNING, TestStatus.COMPLETED}),
    TestStatus.COMPLETED: frozenset({TestStatus.ARCHIVED}),
    TestStatus.ARCHIVED: frozenset(),
}


def can_transition(current: TestStatus, target: TestStatus) -> bool:
    """current から target への遷移が許可されているか"""
    return target in ALLOWED_TRANSITIONS[current]


class LifecycleManager(WinnerCheck):
    """実験ライフサイクル管理クラス

    コンバージョン記録後の勝者チェック（WinnerCheck）も兼ねる。

    使用例:
        store = PostgresExperimentStore(DatabaseConnection())
        manager = LifecycleManager(store)

        test = await manager.create("owner-1", CreateTestRequest(...))
        await manager.start(test.id)

        assigned = await manager.assign(test.id, "session-123")
        await manager.record_conversion(
            test.id, assigned.variant_id, "session-123", "approval", value=4800.0,
        )

        result = await manager.get_results(test.id)
        await manager.complete(test.id)

    Attributes:
        store: 実験ストア
        config: 実験エンジン設定
        clock: 時計
        analyzer: 統計分析
        winner_engine: 勝者判定
        assignment: バリアント割り当て
        conversions: コンバージョン記録
        logger: ロガー
    """

    def __init__(
        self,
        store: ExperimentStore,
        analyzer: Optional[StatisticalAnalyzer] = None,
        config: Optional[ExperimentConfig] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """LifecycleManagerを初期化

        Args:
            store: 実験ストア
            analyzer: 統計分析。Noneの場合は config と rng から生成。
            config: 実験エンジン設定。Noneの場合はデフォルト設定を使用。
            clock: 時計。Noneの場合はシステム時刻。
            rng: 割り当て抽選とベイズシミュレーションの乱数源
            logger: ロガー。Noneの場合はモジュールのロガー。
        """
        self.store = store
        self.config = config or ExperimentConfig()
        self.clock = clock or AsyncioClock()
        self.logger = logger or logging.getLogger(__name__)

        rng = rng or random.Random()
        self.analyzer = analyzer or StatisticalAnalyzer(self.config, rng=rng, logger=self.logger)
        self.winner_engine = WinnerDecisionEngine(self.analyzer, logger=self.logger)
        self.assignment = AssignmentEngine(store, rng=rng, logger=self.logger)
        self.conversions = ConversionRecorder(store, winner_check=self, logger=self.logger)

    # ===== 作成・参照 =====

    async def create(self, owner_id: str, request: CreateTestRequest) -> ABTest:
        """実験をバリアント付きで作成（status=draft）

        コントロールが指定されていなければ最初のバリアントをコントロールにする。

        Raises:
            ExperimentValidationError: バリアント数、配分率、信頼水準、
                最小サンプル数、コントロール指定が不正な場合
        """
        if len(request.variants) < self.config.min_variants:
            raise ExperimentValidationError(
                f"A test requires at least {self.config.min_variants} variants, "
                f"got {len(request.variants)}"
            )

        self._validate_allocations([v.traffic_allocation for v in request.variants])

        confidence_level = (
            request.confidence_level
            if request.confidence_level is not None
            else self.config.default_confidence_level
        )
        self._validate_confidence_level(confidence_level)

        min_sample_size = (
            request.min_sample_size
            if request.min_sample_size is not None
            else self.config.default_min_sample_size
        )
        self._validate_min_sample_size(min_sample_size)

        controls = [i for i, v in enumerate(request.variants) if v.is_control]
        if len(controls) > 1:
            raise ExperimentValidationError("Only one variant can be the control")
        control_index = controls[0] if controls else 0

        now = self.clock.now()
        test_id = uuid4()
        test = ABTest(
            id=test_id,
            owner_id=owner_id,
            name=request.name,
            description=request.description,
            type=request.type,
            primary_metric=request.primary_metric,
            secondary_metrics=list(request.secondary_metrics),
            status=TestStatus.DRAFT,
            confidence_level=confidence_level,
            min_sample_size=min_sample_size,
            auto_select_winner=request.auto_select_winner,
            target_template_id=request.target_template_id,
            start_date=request.start_date,
            end_date=request.end_date,
            created_at=now,
            updated_at=now,
            variants=[
                Variant(
                    id=uuid4(),
                    test_id=test_id,
                    name=spec.name,
                    description=spec.description,
                    traffic_allocation=spec.traffic_allocation,
                    content=dict(spec.content),
                    is_control=(i == control_index),
                    created_at=now,
                )
                for i, spec in enumerate(request.variants)
            ],
        )

        created = await asyncio.to_thread(self.store.create_test, test)
        self.logger.info(
            f"実験を作成: test_id={created.id}, name={created.name}, "
            f"variants={len(created.variants)}"
        )
        return created

    async def get(self, test_id: UUID, owner_id: Optional[str] = None) -> ABTest:
        """実験を取得

        owner_id を指定した場合、所有者が異なる実験は存在しないものとして扱う。

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        test = await asyncio.to_thread(self.store.get_test, test_id)
        if test is None or (owner_id is not None and test.owner_id != owner_id):
            raise ExperimentNotFoundError(f"Test {test_id} not found")
        return test

    async def list(
        self,
        owner_id: Optional[str] = None,
        status: Optional[TestStatus] = None,
        limit: Optional[int] = None,
    ) -> List[ABTest]:
        """実験一覧を作成日時の降順で取得"""
        return await asyncio.to_thread(
            self.store.list_tests,
            owner_id=owner_id,
            status=status,
            limit=limit or self.config.default_list_limit,
        )

    # ===== 更新・状態遷移 =====

    async def update(self, test_id: UUID, patch: TestPatch) -> ABTest:
        """実験のメタデータ・ポリシーを更新

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            ExperimentStateError: 終了状態の実験、または許可されない状態遷移の場合
            ExperimentValidationError: 最小サンプル数が不正な場合
        """
        test = await self.get(test_id)
        if test.is_terminal:
            raise ExperimentStateError(
                f"Cannot update test in '{test.status.value}' status"
            )

        fields = patch.to_fields()
        if not fields:
            return test

        if "min_sample_size" in fields:
            self._validate_min_sample_size(fields["min_sample_size"])

        status = fields.get("status")
        if status is not None and status != test.status:
            self._ensure_transition(test, status)
            if status == TestStatus.RUNNING and test.start_date is None:
                fields["start_date"] = self.clock.now()
            if status == TestStatus.COMPLETED and "end_date" not in fields:
                fields["end_date"] = self.clock.now()

        await self._update(test_id, fields)
        return await self.get(test_id)

    async def start(self, test_id: UUID) -> ABTest:
        """実験を開始（draft / paused → running）

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            ExperimentStateError: draft / paused 以外から開始しようとした場合
        """
        test = await self.get(test_id)
        self._ensure_transition(test, TestStatus.RUNNING)

        fields: Dict[str, Any] = {"status": TestStatus.RUNNING}
        if test.start_date is None:
            fields["start_date"] = self.clock.now()

        await self._update(test_id, fields)
        self.logger.info(f"実験を開始: test_id={test_id}")
        return await self.get(test_id)

    async def pause(self, test_id: UUID) -> ABTest:
        """実験を一時停止（running → paused）"""
        test = await self.get(test_id)
        self._ensure_transition(test, TestStatus.PAUSED)

        await self._update(test_id, {"status": TestStatus.PAUSED})
        self.logger.info(f"実験を一時停止: test_id={test_id}")
        return await self.get(test_id)

    async def complete(
        self,
        test_id: UUID,
        winner_id: Optional[UUID] = None,
    ) -> ABTest:
        """実験を完了（running / paused → completed）

        winner_id を省略した場合は勝者判定を行い、勝者がいればそれを設定する。

        Raises:
            ExperimentNotFoundError: 実験、または指定した勝者バリアントが見つからない場合
            ExperimentStateError: running / paused 以外から完了しようとした場合
        """
        test = await self.get(test_id)
        self._ensure_transition(test, TestStatus.COMPLETED)

        if winner_id is not None:
            if test.get_variant(winner_id) is None:
                raise ExperimentNotFoundError(
                    f"Variant {winner_id} not found in test {test_id}"
                )
        else:
            decision = self.winner_engine.decide(test)
            winner_id = decision.winner_id

        await self._update(
            test_id,
            {
                "status": TestStatus.COMPLETED,
                "end_date": self.clock.now(),
                "winner_id": winner_id,
            },
        )
        self.logger.info(f"実験を完了: test_id={test_id}, winner_id={winner_id}")
        return await self.get(test_id)

    async def delete(self, test_id: UUID) -> None:
        """実験を削除（バリアント・割り当て・コンバージョンも削除）

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        deleted = await asyncio.to_thread(self.store.delete_test, test_id)
        if not deleted:
            raise ExperimentNotFoundError(f"Test {test_id} not found")
        self.logger.info(f"実験を削除: test_id={test_id}")

    async def set_traffic_allocation(
        self,
        test_id: UUID,
        allocations: Sequence[AllocationUpdate],
    ) -> ABTest:
        """バリアントの配分率を変更

        指定したバリアントの配分を既存の配分に重ね、全体の合計が100%であることを
        検証してから保存する。

        Raises:
            ExperimentNotFoundError: 実験またはバリアントが見つからない場合
            ExperimentStateError: 終了状態の実験の場合
            ExperimentValidationError: 配分率が不正な場合
        """
        test = await self.get(test_id)
        if test.is_terminal:
            raise ExperimentStateError(
                f"Cannot change traffic allocation of test in '{test.status.value}' status"
            )

        merged: Dict[UUID, float] = {v.id: v.traffic_allocation for v in test.variants}
        for update in allocations:
            if update.variant_id not in merged:
                raise ExperimentNotFoundError(
                    f"Variant {update.variant_id} not found in test {test_id}"
                )
            merged[update.variant_id] = update.traffic_allocation

        self._validate_allocations(list(merged.values()))

        await asyncio.to_thread(self.store.update_allocations, test_id, merged)
        self.logger.info(f"配分率を更新: test_id={test_id}, variants={len(allocations)}")
        return await self.get(test_id)

    # ===== 割り当て・記録・分析 =====

    async def assign(self, test_id: UUID, session_id: str) -> AssignmentResult:
        """セッションにバリアントを割り当てる（AssignmentEngine に委譲）"""
        return await self.assignment.assign(test_id, session_id)

    async def record_conversion(
        self,
        test_id: UUID,
        variant_id: UUID,
        session_id: str,
        event: str,
        value: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConversionEvent:
        """コンバージョンを記録（ConversionRecorder に委譲）"""
        return await self.conversions.record_conversion(
            test_id, variant_id, session_id, event, value=value, metadata=metadata,
        )

    async def get_results(
        self,
        test_id: UUID,
        owner_id: Optional[str] = None,
    ) -> TestResult:
        """実験の分析結果を取得"""
        test = await self.get(test_id, owner_id=owner_id)
        return self.winner_engine.build_results(test, now=self.clock.now())

    async def check_for_winner(self, test_id: UUID) -> WinnerDecision:
        """実行中の実験の勝者を判定し、勝者がいれば完了させる"""
        test = await asyncio.to_thread(self.store.get_test, test_id)
        if test is None or test.status != TestStatus.RUNNING:
            return WinnerDecision(has_winner=False)

        decision = self.winner_engine.decide(test)
        if decision.has_winner:
            try:
                await self.complete(test_id, decision.winner_id)
            except ExperimentStateError:
                # 別の呼び出しが先に完了させた
                self.logger.debug(f"実験は既に完了済み: test_id={test_id}")
                return decision
            self.logger.info(
                f"勝者を自動選択: test_id={test_id}, winner={decision.winner_name}"
            )
        return decision

    async def check(self, test_id: UUID) -> None:
        await self.check_for_winner(test_id)

    # ===== Private Methods =====

    async def _update(self, test_id: UUID, fields: Dict[str, Any]) -> None:
        updated = await asyncio.to_thread(self.store.update_test, test_id, fields)
        if not updated:
            raise ExperimentNotFoundError(f"Test {test_id} not found")

    def _ensure_transition(self, test: ABTest, target: TestStatus) -> None:
        if not can_transition(test.status, target):
            raise ExperimentStateError(
                f"Cannot change test status from '{test.status.value}' to '{target.value}'"
            )

    def _validate_allocations(self, allocations: Sequence[float]) -> None:
        for allocation in allocations:
            if (
                allocation is None
                or math.isnan(allocation)
                or not 0.0 <= allocation <= 100.0
            ):
                raise ExperimentValidationError(
                    f"Traffic allocation must be between 0 and 100, got {allocation}"
                )

        total = sum(allocations)
        if abs(total - 100.0) > self.config.allocation_tolerance:
            raise ExperimentValidationError(
                f"Traffic allocation must sum to 100%, got {total}"
            )

    def _validate_confidence_level(self, confidence_level: float) -> None:
        if not (
            self.config.min_confidence_level
            <= confidence_level
            <= self.config.max_confidence_level
        ):
            raise ExperimentValidationError(
                f"Confidence level must be between {self.config.min_confidence_level} "
                f"and {self.config.max_confidence_level}, got {confidence_level}"
            )

    def _validate_min_sample_size(self, min_sample_size: int) -> None:
        if min_sample_size < self.config.min_sample_size_floor:
            raise ExperimentValidationError(
                f"Minimum sample size must be at least {self.config.min_sample_size_floor}, "
                f"got {min_sample_size}"
            )
