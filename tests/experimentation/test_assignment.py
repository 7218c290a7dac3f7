# AssignmentEngine テスト
"""
AssignmentEngineの単体テスト

検証観点:
- 固定割り当て: 同じセッションには常に同じバリアント、impressions は1回だけ加算
- 累積配分による選択と、丸め誤差時の最後のバリアントへのフォールバック
- 実行中でない・存在しない実験は ExperimentUnavailableError
- 同時リクエストの競合は勝った側の割り当てを返す
"""

import random
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from src.experimentation.assignment import AssignmentEngine, select_variant
from src.experimentation.errors import ExperimentUnavailableError
from src.experimentation.models import Assignment, TestStatus, Variant
from src.experimentation.store import AssignmentConflict


def make_variants(*allocations):
    test_id = uuid4()
    return [
        Variant(id=uuid4(), test_id=test_id, name=f"V{i}", traffic_allocation=a)
        for i, a in enumerate(allocations)
    ]


# ============================================================================
# select_variant
# ============================================================================


class TestSelectVariant:
    """累積配分によるバリアント選択"""

    def test_boundaries(self):
        variants = make_variants(60.0, 40.0)

        assert select_variant(variants, 0.0) is variants[0]
        assert select_variant(variants, 60.0) is variants[0]
        assert select_variant(variants, 60.0001) is variants[1]
        assert select_variant(variants, 99.99) is variants[1]

    def test_rounding_gap_falls_back_to_last(self):
        """合計が100にわずかに届かない場合は最後のバリアント"""
        variants = make_variants(33.33, 33.33, 33.33)
        assert select_variant(variants, 99.995) is variants[2]

    def test_zero_allocation_is_skipped(self):
        variants = make_variants(0.0, 100.0)
        assert select_variant(variants, 0.5) is variants[1]


# ============================================================================
# assign
# ============================================================================


class TestAssign:
    """セッションへの割り当て"""

    @pytest.mark.asyncio
    async def test_sticky_assignment(self, store, seed_test, rng):
        """2回呼んでも同じバリアント、impressions は合計1"""
        test = seed_test()
        engine = AssignmentEngine(store, rng=rng)

        first = await engine.assign(test.id, "s1")
        second = await engine.assign(test.id, "s1")

        assert first.variant_id == second.variant_id
        assert first.is_new is True
        assert second.is_new is False
        assert sum(v.impressions for v in store.stored(test.id).variants) == 1

    @pytest.mark.asyncio
    async def test_returns_variant_content(self, store, seed_test, rng):
        test = seed_test()
        engine = AssignmentEngine(store, rng=rng)

        result = await engine.assign(test.id, "s1")

        variant = store.variant(result.variant_id)
        assert result.content == variant.content

    @pytest.mark.asyncio
    async def test_draw_selects_by_allocation(self, store, seed_test):
        test = seed_test(allocations=(60.0, 40.0))
        rng = MagicMock()
        rng.random.return_value = 0.75  # draw = 75

        result = await AssignmentEngine(store, rng=rng).assign(test.id, "s1")

        assert result.variant_id == test.variants[1].id

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status", [TestStatus.DRAFT, TestStatus.PAUSED, TestStatus.COMPLETED, TestStatus.ARCHIVED]
    )
    async def test_not_running_is_unavailable(self, store, seed_test, rng, status):
        test = seed_test(status=status)

        with pytest.raises(ExperimentUnavailableError):
            await AssignmentEngine(store, rng=rng).assign(test.id, "s1")

        assert store.assignments == {}

    @pytest.mark.asyncio
    async def test_missing_test_is_unavailable(self, store, rng):
        with pytest.raises(ExperimentUnavailableError):
            await AssignmentEngine(store, rng=rng).assign(uuid4(), "s1")

    @pytest.mark.asyncio
    async def test_conflict_returns_winning_assignment(self, store, seed_test):
        """挿入時に一意制約違反なら、先に作られた割り当てを返す"""
        test = seed_test(allocations=(50.0, 50.0))
        winner_variant = test.variants[1]

        original_create = store.create_assignment

        def racing_create(assignment, count_impression=True):
            # 別リクエストが先に割り当てを作成した状況を再現
            original_create(
                Assignment(test_id=test.id, session_id="s1", variant_id=winner_variant.id)
            )
            raise AssignmentConflict("duplicate")

        store.create_assignment = racing_create
        rng = MagicMock()
        rng.random.return_value = 0.1  # 自分は最初のバリアントを引く

        result = await AssignmentEngine(store, rng=rng).assign(test.id, "s1")

        assert result.variant_id == winner_variant.id
        assert result.is_new is False
        assert store.stored(test.id).variants[0].impressions == 0
        assert store.stored(test.id).variants[1].impressions == 1

    @pytest.mark.asyncio
    async def test_distribution_follows_allocation(self, store, seed_test):
        test = seed_test(allocations=(80.0, 20.0))
        engine = AssignmentEngine(store, rng=random.Random(99))

        for i in range(500):
            await engine.assign(test.id, f"session-{i}")

        control, variant = store.stored(test.id).variants
        assert control.impressions + variant.impressions == 500
        # 期待値 400、標準偏差 ≈ 8.9
        assert 355 <= control.impressions <= 445
