# 時計と周期実行
"""
Clock: 現在時刻と周期実行の抽象

スイープやライフサイクル管理は Clock 経由で時刻を参照し、
周期実行の仕組み（asyncio タスク、cron、テストでの手動呼び出しなど）を知らない。
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, List, Optional


PeriodicCallback = Callable[[], Awaitable[object]]


class Clock(ABC):
    """時刻と周期実行の契約"""

    @abstractmethod
    def now(self) -> datetime:
        """現在日時"""

    @abstractmethod
    def every(self, interval_seconds: float, callback: PeriodicCallback) -> None:
        """callback を interval_seconds ごとに実行するよう登録"""


class AsyncioClock(Clock):
    """asyncio タスクで周期実行する時計

    使用例:
        clock = AsyncioClock()
        clock.every(3600, sweep.check_test_completion)
        try:
            await clock.wait()
        finally:
            clock.stop()

    every() は実行中のイベントループ内で呼び出すこと。
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._tasks: List[asyncio.Task] = []

    def now(self) -> datetime:
        return datetime.now()

    def every(self, interval_seconds: float, callback: PeriodicCallback) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")

        task = asyncio.create_task(self._run(interval_seconds, callback))
        self._tasks.append(task)

    async def _run(self, interval_seconds: float, callback: PeriodicCallback) -> None:
        name = getattr(callback, "__name__", repr(callback))
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await callback()
            except Exception as e:
                # 1回の失敗で周期実行を止めない
                self.logger.error(f"周期処理に失敗: callback={name}, error={e}")

    @property
    def task_count(self) -> int:
        return len(self._tasks)

    async def wait(self) -> None:
        """登録済みタスクがすべて終了（キャンセル）するまで待つ"""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def stop(self) -> None:
        """登録済みタスクをすべてキャンセル"""
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()
