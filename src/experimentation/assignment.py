# バリアント割り当て
"""
AssignmentEngine: セッションへの固定（sticky）バリアント割り当て

処理フロー:
    実験を取得（存在しない・running でなければ ExperimentUnavailableError）
        ↓
    既存の割り当てがあればそのまま返す（再抽選・impressions 加算なし）
        ↓
    [0, 100) の一様乱数を1回引き、保存順に配分率を累積して
    累積値 >= 乱数となる最初のバリアントを選ぶ（丸め誤差の隙間は最後のバリアント）
        ↓
    割り当てを作成し impressions を +1（同一トランザクション）
        ↓
    一意制約違反（同時リクエスト）の場合は、勝った側の割り当てを読み直して返す
"""

import asyncio
import logging
import random
from typing import List, Optional
from uuid import UUID

from src.experimentation.errors import ExperimentUnavailableError
from src.experimentation.models import (
    Assignment,
    AssignmentResult,
    TestStatus,
    Variant,
)
from src.experimentation.store import AssignmentConflict, ExperimentStore


def select_variant(variants: List[Variant], draw: float) -> Variant:
    """累積配分率でバリアントを選択

    Args:
        variants: 保存順のバリアント
        draw: [0, 100) の乱数

    Returns:
        累積配分率が draw 以上になった最初のバリアント。
        どれも該当しなければ最後のバリアント。
    """
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.traffic_allocation
        if cumulative >= draw:
            return variant

    return variants[-1]


class AssignmentEngine:
    """セッションへのバリアント割り当てクラス

    使用例:
        engine = AssignmentEngine(store)
        result = await engine.assign(test_id, "session-123")
        render(result.content)

    Attributes:
        store: 実験ストア
        rng: 割り当て抽選用の乱数源
        logger: ロガー
    """

    def __init__(
        self,
        store: ExperimentStore,
        rng: Optional[random.Random] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.rng = rng or random.Random()
        self.logger = logger or logging.getLogger(__name__)

    async def assign(self, test_id: UUID, session_id: str) -> AssignmentResult:
        """セッションにバリアントを割り当てる

        Args:
            test_id: 実験ID
            session_id: セッションID

        Returns:
            AssignmentResult: 割り当てられたバリアントとコンテンツ

        Raises:
            ExperimentUnavailableError: 実験が存在しない、または running でない場合
        """
        test = await asyncio.to_thread(self.store.get_test, test_id)
        if test is None or test.status != TestStatus.RUNNING:
            raise ExperimentUnavailableError(f"Test {test_id} not available")

        if not test.variants:
            raise ExperimentUnavailableError(f"Test {test_id} has no variants")

        existing = await asyncio.to_thread(self.store.get_assignment, test_id, session_id)
        if existing is not None:
            return self._to_result(test.variants, existing.variant_id, is_new=False)

        draw = self.rng.random() * 100.0
        chosen = select_variant(test.variants, draw)

        assignment = Assignment(
            test_id=test_id,
            session_id=session_id,
            variant_id=chosen.id,
        )

        try:
            await asyncio.to_thread(self.store.create_assignment, assignment, True)
        except AssignmentConflict:
            # 同時リクエストに負けた場合は勝った側の割り当てを返す
            winner = await asyncio.to_thread(self.store.get_assignment, test_id, session_id)
            if winner is None:
                raise
            self.logger.debug(
                f"割り当ての競合を解決: test_id={test_id}, session_id={session_id}, "
                f"variant_id={winner.variant_id}"
            )
            return self._to_result(test.variants, winner.variant_id, is_new=False)

        self.logger.debug(
            f"バリアントを割り当て: test_id={test_id}, session_id={session_id}, "
            f"variant={chosen.name}"
        )
        return AssignmentResult(variant_id=chosen.id, content=chosen.content, is_new=True)

    def _to_result(
        self,
        variants: List[Variant],
        variant_id: UUID,
        is_new: bool,
    ) -> AssignmentResult:
        """割り当て済みバリアントIDから結果を組み立てる"""
        variant = next((v for v in variants if v.id == variant_id), None)
        content = variant.content if variant is not None else {}
        return AssignmentResult(variant_id=variant_id, content=content, is_new=is_new)
