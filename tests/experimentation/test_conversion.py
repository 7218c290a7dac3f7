# ConversionRecorder テスト
"""
ConversionRecorderの単体テスト

検証観点:
- イベント分類に応じたカウンター更新（conversion / click / その他）
- assign を経由しないフローでの割り当て作成（impressions は加算しない）
- 完了済みの実験への遅れたイベントの記録
- 記録が途中で失敗した場合に何も保存されないこと
- 勝者チェックの呼び出し条件と、失敗しても記録が成功すること
"""

from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from src.experimentation.conversion import ConversionRecorder, NullWinnerCheck
from src.experimentation.errors import ExperimentNotFoundError
from src.experimentation.models import Assignment, TestStatus


# ============================================================================
# イベント分類
# ============================================================================


class TestEventTaxonomy:
    """イベントごとのカウンター更新"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event", ["approval", "sign", "conversion"])
    async def test_conversion_events(self, store, seed_test, event):
        test = seed_test(auto_select_winner=False)
        variant_id = test.variants[1].id

        await ConversionRecorder(store).record_conversion(
            test.id, variant_id, "s1", event, value=4800.0
        )

        variant = store.variant(variant_id)
        assert variant.conversions == 1
        assert variant.total_value == 4800.0
        assert variant.clicks == 0

    @pytest.mark.asyncio
    async def test_conversion_without_value(self, store, seed_test):
        test = seed_test(auto_select_winner=False)
        variant_id = test.variants[0].id

        await ConversionRecorder(store).record_conversion(test.id, variant_id, "s1", "sign")

        variant = store.variant(variant_id)
        assert variant.conversions == 1
        assert variant.total_value == 0.0

    @pytest.mark.asyncio
    async def test_click_event(self, store, seed_test):
        test = seed_test(auto_select_winner=False)
        variant_id = test.variants[0].id

        await ConversionRecorder(store).record_conversion(test.id, variant_id, "s1", "click")

        variant = store.variant(variant_id)
        assert variant.clicks == 1
        assert variant.conversions == 0

    @pytest.mark.asyncio
    async def test_unknown_event_is_logged_only(self, store, seed_test):
        """不明なイベントはカウンターを更新しないが記録される"""
        test = seed_test(auto_select_winner=False)
        variant_id = test.variants[0].id

        event = await ConversionRecorder(store).record_conversion(
            test.id, variant_id, "s1", "view", metadata={"page": "quote"}
        )

        variant = store.variant(variant_id)
        assert (variant.impressions, variant.conversions, variant.clicks) == (0, 0, 0)
        assert len(store.conversions) == 1
        assert store.conversions[0].metadata == {"page": "quote"}
        assert event.id is not None


# ============================================================================
# 割り当て
# ============================================================================


class TestImplicitAssignment:
    """assign を経由しないフロー"""

    @pytest.mark.asyncio
    async def test_creates_assignment_without_impression(self, store, seed_test):
        test = seed_test(auto_select_winner=False)
        variant_id = test.variants[1].id

        await ConversionRecorder(store).record_conversion(test.id, variant_id, "s1", "click")

        assignment = store.get_assignment(test.id, "s1")
        assert assignment.variant_id == variant_id
        assert store.variant(variant_id).impressions == 0

    @pytest.mark.asyncio
    async def test_existing_assignment_is_kept(self, store, seed_test):
        """別バリアントへの割り当てがあっても上書きしない"""
        test = seed_test(auto_select_winner=False)
        control_id, variant_id = test.variants[0].id, test.variants[1].id
        store.create_assignment(
            Assignment(test_id=test.id, session_id="s1", variant_id=control_id)
        )

        await ConversionRecorder(store).record_conversion(test.id, variant_id, "s1", "sign")

        assert store.get_assignment(test.id, "s1").variant_id == control_id
        assert store.variant(variant_id).conversions == 1


# ============================================================================
# 検証・状態
# ============================================================================


class TestValidation:
    """存在確認と状態"""

    @pytest.mark.asyncio
    async def test_unknown_test(self, store):
        with pytest.raises(ExperimentNotFoundError):
            await ConversionRecorder(store).record_conversion(uuid4(), uuid4(), "s1", "sign")
        assert store.conversions == []

    @pytest.mark.asyncio
    async def test_unknown_variant(self, store, seed_test):
        test = seed_test()

        with pytest.raises(ExperimentNotFoundError):
            await ConversionRecorder(store).record_conversion(test.id, uuid4(), "s1", "sign")
        assert store.conversions == []
        assert store.assignments == {}

    @pytest.mark.asyncio
    async def test_late_event_on_completed_test(self, store, seed_test):
        """完了済みの実験にも記録できる"""
        test = seed_test(status=TestStatus.COMPLETED)
        variant_id = test.variants[0].id

        await ConversionRecorder(store).record_conversion(test.id, variant_id, "s1", "approval")

        assert store.variant(variant_id).conversions == 1

    @pytest.mark.asyncio
    async def test_counter_failure_leaves_nothing_behind(self, store, seed_test, monkeypatch):
        """カウンター更新に失敗したらイベントも割り当ても保存されない"""
        test = seed_test(auto_select_winner=False)
        variant_id = test.variants[1].id

        def failing_increment(*args, **kwargs):
            raise RuntimeError("counter update failed")

        monkeypatch.setattr(store, "increment_counters", failing_increment)

        with pytest.raises(RuntimeError):
            await ConversionRecorder(store).record_conversion(
                test.id, variant_id, "s1", "approval", value=4800.0
            )

        assert store.conversions == []
        assert store.assignments == {}
        variant = store.variant(variant_id)
        assert (variant.conversions, variant.total_value) == (0, 0.0)

    @pytest.mark.asyncio
    async def test_multiple_conversions_in_one_session(self, store, seed_test):
        """同じセッションの approval と sign はそれぞれ数える"""
        test = seed_test(auto_select_winner=False)
        variant_id = test.variants[0].id
        store.create_assignment(
            Assignment(test_id=test.id, session_id="s1", variant_id=variant_id)
        )

        recorder = ConversionRecorder(store)
        await recorder.record_conversion(test.id, variant_id, "s1", "approval")
        await recorder.record_conversion(test.id, variant_id, "s1", "sign")

        variant = store.variant(variant_id)
        assert (variant.impressions, variant.conversions) == (1, 2)
        assert len(store.conversions) == 2


# ============================================================================
# 勝者チェック
# ============================================================================


class TestWinnerCheck:
    """記録後の勝者チェック"""

    @pytest.mark.asyncio
    async def test_called_for_running_auto_select_test(self, store, seed_test):
        test = seed_test(auto_select_winner=True)
        winner_check = AsyncMock()

        await ConversionRecorder(store, winner_check=winner_check).record_conversion(
            test.id, test.variants[0].id, "s1", "sign"
        )

        winner_check.check.assert_awaited_once_with(test.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,auto_select",
        [(TestStatus.RUNNING, False), (TestStatus.PAUSED, True), (TestStatus.COMPLETED, True)],
    )
    async def test_not_called_otherwise(self, store, seed_test, status, auto_select):
        test = seed_test(status=status, auto_select_winner=auto_select)
        winner_check = AsyncMock()

        await ConversionRecorder(store, winner_check=winner_check).record_conversion(
            test.id, test.variants[0].id, "s1", "sign"
        )

        winner_check.check.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_does_not_fail_recording(self, store, seed_test):
        test = seed_test(auto_select_winner=True)
        winner_check = AsyncMock()
        winner_check.check.side_effect = RuntimeError("analysis failed")

        event = await ConversionRecorder(store, winner_check=winner_check).record_conversion(
            test.id, test.variants[0].id, "s1", "sign"
        )

        assert event.id is not None
        assert store.variant(test.variants[0].id).conversions == 1

    @pytest.mark.asyncio
    async def test_default_is_noop(self):
        assert await NullWinnerCheck().check(uuid4()) is None
