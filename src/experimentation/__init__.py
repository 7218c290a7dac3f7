# Experimentation Module
"""
A/Bテスト実験エンジン

実験の作成・状態遷移、セッションへの固定バリアント割り当て、
コンバージョン記録、統計分析と勝者判定、定期スイープを提供する。

設計方針:
- 状態はすべて ExperimentStore に置き、コアはメモリ上に保持しない
- カウンターはストア側の原子的インクリメントでのみ更新
- 割り当ての唯一性は (test_id, session_id) の一意制約で保証
- ロガー、時計、乱数源、通知先は外部から注入する
"""

from src.experimentation.assignment import AssignmentEngine, select_variant
from src.experimentation.clock import AsyncioClock, Clock
from src.experimentation.conversion import (
    ConversionRecorder,
    NullWinnerCheck,
    WinnerCheck,
)
from src.experimentation.errors import (
    ExperimentError,
    ExperimentNotFoundError,
    ExperimentStateError,
    ExperimentUnavailableError,
    ExperimentValidationError,
)
from src.experimentation.lifecycle import ALLOWED_TRANSITIONS, LifecycleManager
from src.experimentation.models import (
    ABTest,
    AllocationUpdate,
    Assignment,
    AssignmentResult,
    ConversionEvent,
    CreateTestRequest,
    TestPatch,
    TestResult,
    TestStatus,
    TestSummary,
    TestType,
    Variant,
    VariantResult,
    VariantSnapshot,
    VariantSpec,
    WinnerDecision,
    WinnerMetric,
)
from src.experimentation.statistics import StatisticalAnalyzer
from src.experimentation.store import (
    AssignmentConflict,
    ExperimentStore,
    PostgresExperimentStore,
)
from src.experimentation.sweep import (
    LoggingSummaryNotifier,
    NullSummaryNotifier,
    PeriodicSweep,
    SummaryNotifier,
    SweepReport,
)
from src.experimentation.winner import WinnerDecisionEngine

__all__ = [
    # lifecycle
    "LifecycleManager",
    "ALLOWED_TRANSITIONS",
    # components
    "AssignmentEngine",
    "select_variant",
    "ConversionRecorder",
    "WinnerCheck",
    "NullWinnerCheck",
    "StatisticalAnalyzer",
    "WinnerDecisionEngine",
    "PeriodicSweep",
    "SweepReport",
    "SummaryNotifier",
    "NullSummaryNotifier",
    "LoggingSummaryNotifier",
    "Clock",
    "AsyncioClock",
    # store
    "ExperimentStore",
    "PostgresExperimentStore",
    "AssignmentConflict",
    # models
    "ABTest",
    "Variant",
    "Assignment",
    "ConversionEvent",
    "AssignmentResult",
    "CreateTestRequest",
    "VariantSpec",
    "TestPatch",
    "AllocationUpdate",
    "VariantSnapshot",
    "VariantResult",
    "WinnerDecision",
    "TestResult",
    "TestSummary",
    "TestStatus",
    "TestType",
    "WinnerMetric",
    # errors
    "ExperimentError",
    "ExperimentValidationError",
    "ExperimentNotFoundError",
    "ExperimentStateError",
    "ExperimentUnavailableError",
]
