# 共通フィクスチャ
"""
テスト用のインメモリ実験ストアと手動時計

DummyExperimentStore は PostgreSQL ストアと同じ契約を持つ:
- get/list は保存済みデータのコピーを返す（呼び出し側の変更は保存されない）
- (test_id, session_id) の重複割り当ては AssignmentConflict
- カウンターは increment_counters / create_assignment / record_conversion でのみ増える
"""

import copy
import random
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Set, Tuple
from uuid import UUID, uuid4

import pytest

from src.config.experiment_config import ExperimentConfig
from src.experimentation.clock import Clock
from src.experimentation.lifecycle import LifecycleManager
from src.experimentation.models import (
    ABTest,
    Assignment,
    ConversionEvent,
    TestStatus,
    TestType,
    Variant,
    WinnerMetric,
)
from src.experimentation.store import AssignmentConflict, ExperimentStore


class DummyExperimentStore(ExperimentStore):
    def __init__(self):
        self.tests: Dict[UUID, ABTest] = {}
        self.assignments: Dict[Tuple[UUID, str], Assignment] = {}
        self.conversions: List[ConversionEvent] = []
        self.failing_tests: Set[UUID] = set()

    def create_test(self, test: ABTest) -> ABTest:
        self.tests[test.id] = copy.deepcopy(test)
        return test

    def get_test(self, test_id: UUID) -> Optional[ABTest]:
        if test_id in self.failing_tests:
            raise RuntimeError(f"store failure for {test_id}")
        test = self.tests.get(test_id)
        return copy.deepcopy(test) if test is not None else None

    def list_tests(self, owner_id=None, status=None, auto_select_winner=None, limit=100):
        tests = [
            t for t in self.tests.values()
            if (owner_id is None or t.owner_id == owner_id)
            and (status is None or t.status == status)
            and (auto_select_winner is None or t.auto_select_winner == auto_select_winner)
        ]
        tests.sort(key=lambda t: t.created_at, reverse=True)
        if limit is not None:
            tests = tests[:limit]
        return copy.deepcopy(tests)

    def update_test(self, test_id, fields) -> bool:
        test = self.tests.get(test_id)
        if test is None:
            return False
        for name, value in fields.items():
            setattr(test, name, value)
        test.updated_at = datetime.now()
        return True

    def delete_test(self, test_id) -> bool:
        if test_id not in self.tests:
            return False
        del self.tests[test_id]
        self.assignments = {
            key: a for key, a in self.assignments.items() if key[0] != test_id
        }
        self.conversions = [c for c in self.conversions if c.test_id != test_id]
        return True

    def update_allocations(self, test_id, allocations) -> None:
        for variant in self.tests[test_id].variants:
            if variant.id in allocations:
                variant.traffic_allocation = allocations[variant.id]

    def get_assignment(self, test_id, session_id) -> Optional[Assignment]:
        assignment = self.assignments.get((test_id, session_id))
        return copy.deepcopy(assignment) if assignment is not None else None

    def create_assignment(self, assignment, count_impression=True) -> None:
        key = (assignment.test_id, assignment.session_id)
        if key in self.assignments:
            raise AssignmentConflict(f"duplicate assignment {key}")
        self.assignments[key] = copy.deepcopy(assignment)
        if count_impression:
            self.increment_counters(assignment.variant_id, impressions=1)

    def record_conversion(
        self,
        event: ConversionEvent,
        assignment: Optional[Assignment] = None,
        conversions=0,
        clicks=0,
        total_value=0.0,
    ) -> ConversionEvent:
        # カウンター更新が失敗したらイベントも割り当ても残さない
        self.increment_counters(
            event.variant_id, conversions=conversions, clicks=clicks, total_value=total_value
        )
        if assignment is not None:
            key = (assignment.test_id, assignment.session_id)
            self.assignments.setdefault(key, copy.deepcopy(assignment))
        if event.id is None:
            event.id = uuid4()
        self.conversions.append(copy.deepcopy(event))
        return event

    def increment_counters(
        self,
        variant_id,
        impressions=0,
        conversions=0,
        clicks=0,
        total_value=0.0,
    ) -> None:
        variant = self.variant(variant_id)
        variant.impressions += impressions
        variant.conversions += conversions
        variant.clicks += clicks
        variant.total_value += total_value

    def archive_completed_before(self, cutoff: datetime) -> int:
        count = 0
        for test in self.tests.values():
            if (
                test.status == TestStatus.COMPLETED
                and test.end_date is not None
                and test.end_date < cutoff
            ):
                test.status = TestStatus.ARCHIVED
                count += 1
        return count

    # テスト用ヘルパー（保存済みの実体を直接返す）

    def variant(self, variant_id: UUID) -> Variant:
        for test in self.tests.values():
            for variant in test.variants:
                if variant.id == variant_id:
                    return variant
        raise KeyError(variant_id)

    def stored(self, test_id: UUID) -> ABTest:
        return self.tests[test_id]


class ManualClock(Clock):
    """手動で進める時計。every() は登録内容を記録するだけ。"""

    def __init__(self, current: datetime):
        self.current = current
        self.scheduled: List[Tuple[float, object]] = []

    def now(self) -> datetime:
        return self.current

    def every(self, interval_seconds, callback) -> None:
        self.scheduled.append((interval_seconds, callback))

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def config():
    """テスト用設定（ベイズ試行回数を小さくする）"""
    config = ExperimentConfig()
    config.bayesian_simulations = 2000
    return config


@pytest.fixture
def clock():
    return ManualClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def store():
    return DummyExperimentStore()


@pytest.fixture
def rng():
    return random.Random(20260302)


@pytest.fixture
def manager(store, config, clock, rng):
    return LifecycleManager(store, config=config, clock=clock, rng=rng)


@pytest.fixture
def seed_test(store, clock):
    """実験をストアに直接保存するファクトリ

    counters は (impressions, conversions) のリスト（バリアント順）。
    最初のバリアントがコントロール。
    """

    def _seed(
        status: TestStatus = TestStatus.RUNNING,
        allocations: Sequence[float] = (50.0, 50.0),
        counters: Optional[Sequence[Tuple[int, int]]] = None,
        min_sample_size: int = 100,
        confidence_level: float = 0.95,
        auto_select_winner: bool = True,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        owner_id: str = "owner-1",
        name: str = "見積もり提示テスト",
    ) -> ABTest:
        test_id = uuid4()
        counters = counters or [(0, 0)] * len(allocations)
        variants = [
            Variant(
                id=uuid4(),
                test_id=test_id,
                name=chr(ord("A") + i),
                traffic_allocation=allocation,
                content={"layout": f"layout-{i}"},
                is_control=(i == 0),
                impressions=counters[i][0],
                conversions=counters[i][1],
            )
            for i, allocation in enumerate(allocations)
        ]
        test = ABTest(
            id=test_id,
            owner_id=owner_id,
            name=name,
            type=TestType.PRICING_PRESENTATION,
            primary_metric=WinnerMetric.CONVERSION_RATE,
            status=status,
            variants=variants,
            confidence_level=confidence_level,
            min_sample_size=min_sample_size,
            auto_select_winner=auto_select_winner,
            start_date=start_date,
            end_date=end_date,
            created_at=clock.now(),
            updated_at=clock.now(),
        )
        store.create_test(test)
        return test

    return _seed
