# コンバージョン記録
"""
ConversionRecorder: コンバージョンイベントの記録とカウンター更新

イベント分類:
- approval / sign / conversion → conversions +1、value があれば total_value に加算
- click → clicks +1
- それ以外（view など）→ ログのみ、カウンターは更新しない

完了済みの実験にも遅れて届いたイベントを記録できる。
自動勝者選択が有効で実行中の実験では、記録後に勝者チェックを行う
（チェックの失敗は記録自体を失敗させない）。
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from uuid import UUID

from src.experimentation.errors import ExperimentNotFoundError
from src.experimentation.models import (
    CLICK_EVENTS,
    CONVERSION_EVENTS,
    Assignment,
    ConversionEvent,
    TestStatus,
)
from src.experimentation.store import ExperimentStore


class WinnerCheck(ABC):
    """コンバージョン記録後に呼ばれる勝者チェック

    LifecycleManager が勝者判定と自動完了を行う実装を提供する。
    """

    @abstractmethod
    async def check(self, test_id: UUID) -> None:
        """実験の勝者を判定し、必要なら完了させる"""


class NullWinnerCheck(WinnerCheck):
    """何もしない勝者チェック（デフォルト）"""

    async def check(self, test_id: UUID) -> None:
        return None


class ConversionRecorder:
    """コンバージョン記録クラス

    使用例:
        recorder = ConversionRecorder(store, winner_check=manager)
        await recorder.record_conversion(
            test_id, variant_id, "session-123", "approval", value=4800.0,
        )

    Attributes:
        store: 実験ストア
        winner_check: 記録後の勝者チェック
        logger: ロガー
    """

    def __init__(
        self,
        store: ExperimentStore,
        winner_check: Optional[WinnerCheck] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.winner_check = winner_check or NullWinnerCheck()
        self.logger = logger or logging.getLogger(__name__)

    async def record_conversion(
        self,
        test_id: UUID,
        variant_id: UUID,
        session_id: str,
        event: str,
        value: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConversionEvent:
        """コンバージョンイベントを記録

        Args:
            test_id: 実験ID
            variant_id: バリアントID
            session_id: セッションID
            event: イベント名（view, click, approval, sign など）
            value: 金額などの数値（任意）
            metadata: 任意のメタデータ

        Returns:
            記録した ConversionEvent

        Raises:
            ExperimentNotFoundError: 実験またはバリアントが見つからない場合
        """
        test = await asyncio.to_thread(self.store.get_test, test_id)
        if test is None:
            raise ExperimentNotFoundError(f"Test {test_id} not found")

        if test.get_variant(variant_id) is None:
            raise ExperimentNotFoundError(
                f"Variant {variant_id} not found in test {test_id}"
            )

        assignment = await self._implicit_assignment(test_id, variant_id, session_id)

        if event in CONVERSION_EVENTS:
            counters = {"conversions": 1, "total_value": value or 0.0}
        elif event in CLICK_EVENTS:
            counters = {"clicks": 1}
        else:
            counters = {}

        # イベント・割り当て・カウンターは1トランザクションで書き込む
        conversion = await asyncio.to_thread(
            self.store.record_conversion,
            ConversionEvent(
                test_id=test_id,
                variant_id=variant_id,
                session_id=session_id,
                event=event,
                value=value,
                metadata=metadata or {},
            ),
            assignment,
            **counters,
        )

        self.logger.debug(
            f"コンバージョンを記録: test_id={test_id}, variant_id={variant_id}, "
            f"event={event}"
        )

        if test.auto_select_winner and test.status == TestStatus.RUNNING:
            try:
                await self.winner_check.check(test_id)
            except Exception as e:
                self.logger.warning(f"勝者チェックに失敗: test_id={test_id}, error={e}")

        return conversion

    async def _implicit_assignment(
        self,
        test_id: UUID,
        variant_id: UUID,
        session_id: str,
    ) -> Optional[Assignment]:
        """割り当てが無ければ作成すべき割り当てを返す（assign を経由しないフロー向け）

        既存の割り当てが別バリアントを指している場合は上書きしない。
        """
        existing = await asyncio.to_thread(self.store.get_assignment, test_id, session_id)
        if existing is None:
            return Assignment(test_id=test_id, session_id=session_id, variant_id=variant_id)

        if existing.variant_id != variant_id:
            self.logger.warning(
                f"割り当てと異なるバリアントへのコンバージョン: test_id={test_id}, "
                f"session_id={session_id}, assigned={existing.variant_id}, "
                f"reported={variant_id}"
            )
        return None
