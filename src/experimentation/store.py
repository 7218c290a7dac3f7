# 実験ストア
"""
実験・バリアント・割り当て・コンバージョンの永続化

ExperimentStore はコアが必要とする操作だけを定義した契約で、
PostgresExperimentStore が psycopg2 による実装を提供する。

ストアに求める性質:
- カウンター（impressions / conversions / clicks / total_value）はストア側の
  原子的インクリメント（SET x = x + %s）で更新する
- 割り当ては (test_id, session_id) の一意制約で唯一性を保証し、
  違反時は AssignmentConflict を送出する
- カウンターや割り当てをメモリ上にキャッシュしない
- コンバージョンは追記のみで、割り当て・カウンター更新と同じトランザクションで書き込む
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from psycopg2 import errors
from psycopg2.extras import Json

from src.db.connection import DatabaseConnection
from src.experimentation.models import (
    ABTest,
    Assignment,
    ConversionEvent,
    TestStatus,
    TestType,
    Variant,
    WinnerMetric,
)


logger = logging.getLogger(__name__)


class AssignmentConflict(Exception):
    """(test_id, session_id) の割り当てが既に存在する場合の例外"""
    pass


# update_test で更新できるフィールド
UPDATABLE_TEST_FIELDS = frozenset({
    "name",
    "description",
    "status",
    "min_sample_size",
    "auto_select_winner",
    "start_date",
    "end_date",
    "winner_id",
})


class ExperimentStore(ABC):
    """実験ストアの契約"""

    @abstractmethod
    def create_test(self, test: ABTest) -> ABTest:
        """実験とバリアントを1トランザクションで作成"""

    @abstractmethod
    def get_test(self, test_id: UUID) -> Optional[ABTest]:
        """実験をバリアント付きで取得。存在しなければ None。"""

    @abstractmethod
    def list_tests(
        self,
        owner_id: Optional[str] = None,
        status: Optional[TestStatus] = None,
        auto_select_winner: Optional[bool] = None,
        limit: Optional[int] = 100,
    ) -> List[ABTest]:
        """条件に合う実験を作成日時の降順で取得（limit=None で全件）"""

    @abstractmethod
    def update_test(self, test_id: UUID, fields: Dict[str, Any]) -> bool:
        """実験のフィールドを更新。対象が無ければ False。"""

    @abstractmethod
    def delete_test(self, test_id: UUID) -> bool:
        """実験を削除（バリアント・割り当て・コンバージョンも削除）"""

    @abstractmethod
    def update_allocations(self, test_id: UUID, allocations: Dict[UUID, float]) -> None:
        """バリアントの配分率を1トランザクションで更新"""

    @abstractmethod
    def get_assignment(self, test_id: UUID, session_id: str) -> Optional[Assignment]:
        """セッションの割り当てを取得"""

    @abstractmethod
    def create_assignment(
        self,
        assignment: Assignment,
        count_impression: bool = True,
    ) -> None:
        """割り当てを作成し、必要なら同じトランザクションで impressions を +1

        Raises:
            AssignmentConflict: 同じ (test_id, session_id) が既に存在する場合
        """

    @abstractmethod
    def record_conversion(
        self,
        event: ConversionEvent,
        assignment: Optional[Assignment] = None,
        conversions: int = 0,
        clicks: int = 0,
        total_value: float = 0.0,
    ) -> ConversionEvent:
        """コンバージョンイベントを追記し、カウンターを同じトランザクションで加算

        assignment を渡すと、割り当てが無い場合に限り impressions を増やさずに作成する
        （既存の割り当てがあればそのまま残す）。いずれかの書き込みが失敗した場合は
        何も保存しない。

        Raises:
            ValueError: 負のカウンター値が渡された場合
        """

    @abstractmethod
    def increment_counters(
        self,
        variant_id: UUID,
        impressions: int = 0,
        conversions: int = 0,
        clicks: int = 0,
        total_value: float = 0.0,
    ) -> None:
        """バリアントのカウンターを原子的に加算"""

    @abstractmethod
    def archive_completed_before(self, cutoff: datetime) -> int:
        """end_date が cutoff より前の completed 実験を archived にし、件数を返す"""


_TEST_COLUMNS = """
    id, owner_id, name, description, type, primary_metric, secondary_metrics,
    status, confidence_level, min_sample_size, auto_select_winner,
    target_template_id, start_date, end_date, winner_id, created_at, updated_at
"""

_VARIANT_COLUMNS = """
    id, test_id, name, description, traffic_allocation, content, is_control,
    impressions, conversions, clicks, total_value, created_at
"""


class PostgresExperimentStore(ExperimentStore):
    """PostgreSQL による実験ストア

    テーブル定義は src/db/schema.sql を参照。

    使用例:
        db = DatabaseConnection()
        store = PostgresExperimentStore(db)

        test = store.get_test(test_id)
        store.increment_counters(variant_id, conversions=1, total_value=1200.0)

    Attributes:
        db: データベース接続
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def create_test(self, test: ABTest) -> ABTest:
        with self.db.get_cursor() as cur:
            cur.execute(
                """
                INSERT INTO ab_tests (
                    id, owner_id, name, description, type, primary_metric,
                    secondary_metrics, status, confidence_level, min_sample_size,
                    auto_select_winner, target_template_id, start_date, end_date,
                    created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    str(test.id),
                    test.owner_id,
                    test.name,
                    test.description,
                    test.type.value,
                    test.primary_metric.value,
                    Json([m.value for m in test.secondary_metrics]),
                    test.status.value,
                    test.confidence_level,
                    test.min_sample_size,
                    test.auto_select_winner,
                    test.target_template_id,
                    test.start_date,
                    test.end_date,
                    test.created_at,
                    test.updated_at,
                ),
            )

            for position, variant in enumerate(test.variants):
                cur.execute(
                    """
                    INSERT INTO ab_test_variants (
                        id, test_id, position, name, description,
                        traffic_allocation, content, is_control, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        str(variant.id),
                        str(test.id),
                        position,
                        variant.name,
                        variant.description,
                        variant.traffic_allocation,
                        Json(variant.content),
                        variant.is_control,
                        variant.created_at,
                    ),
                )

        logger.info(
            f"実験を作成: test_id={test.id}, variants={len(test.variants)}"
        )
        return test

    def get_test(self, test_id: UUID) -> Optional[ABTest]:
        with self.db.get_cursor() as cur:
            cur.execute(
                f"SELECT {_TEST_COLUMNS} FROM ab_tests WHERE id = %s",
                (str(test_id),),
            )
            row = cur.fetchone()
            if row is None:
                return None

            test = self._row_to_test(row)
            cur.execute(
                f"""
                SELECT {_VARIANT_COLUMNS}
                FROM ab_test_variants
                WHERE test_id = %s
                ORDER BY position
                """,
                (str(test_id),),
            )
            test.variants = [self._row_to_variant(r) for r in cur.fetchall()]
            return test

    def list_tests(
        self,
        owner_id: Optional[str] = None,
        status: Optional[TestStatus] = None,
        auto_select_winner: Optional[bool] = None,
        limit: Optional[int] = 100,
    ) -> List[ABTest]:
        conditions = []
        params: List[Any] = []

        if owner_id is not None:
            conditions.append("owner_id = %s")
            params.append(owner_id)

        if status is not None:
            conditions.append("status = %s")
            params.append(status.value)

        if auto_select_winner is not None:
            conditions.append("auto_select_winner = %s")
            params.append(auto_select_winner)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        # LIMIT NULL は無制限
        params.append(limit)

        with self.db.get_cursor() as cur:
            cur.execute(
                f"""
                SELECT {_TEST_COLUMNS}
                FROM ab_tests
                {where}
                ORDER BY created_at DESC
                LIMIT %s
                """,
                params,
            )
            tests = [self._row_to_test(row) for row in cur.fetchall()]
            if not tests:
                return []

            cur.execute(
                f"""
                SELECT {_VARIANT_COLUMNS}
                FROM ab_test_variants
                WHERE test_id = ANY(%s::uuid[])
                ORDER BY test_id, position
                """,
                ([str(t.id) for t in tests],),
            )
            by_test: Dict[UUID, List[Variant]] = {}
            for row in cur.fetchall():
                variant = self._row_to_variant(row)
                by_test.setdefault(variant.test_id, []).append(variant)

        for test in tests:
            test.variants = by_test.get(test.id, [])
        return tests

    def update_test(self, test_id: UUID, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - UPDATABLE_TEST_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        updates = []
        params: List[Any] = []
        for name, value in fields.items():
            updates.append(f"{name} = %s")
            if isinstance(value, TestStatus):
                value = value.value
            elif isinstance(value, UUID):
                value = str(value)
            params.append(value)

        # updated_at は常に更新
        updates.append("updated_at = %s")
        params.append(datetime.now())
        params.append(str(test_id))

        with self.db.get_cursor() as cur:
            cur.execute(
                f"UPDATE ab_tests SET {', '.join(updates)} WHERE id = %s",
                params,
            )
            updated = cur.rowcount > 0

        if updated:
            logger.debug(f"実験を更新: test_id={test_id}, fields={sorted(fields)}")
        return updated

    def delete_test(self, test_id: UUID) -> bool:
        with self.db.get_cursor() as cur:
            cur.execute("DELETE FROM ab_tests WHERE id = %s", (str(test_id),))
            deleted = cur.rowcount > 0

        if deleted:
            logger.info(f"実験を削除: test_id={test_id}")
        return deleted

    def update_allocations(self, test_id: UUID, allocations: Dict[UUID, float]) -> None:
        with self.db.get_cursor() as cur:
            for variant_id, allocation in allocations.items():
                cur.execute(
                    """
                    UPDATE ab_test_variants
                    SET traffic_allocation = %s
                    WHERE id = %s AND test_id = %s
                    """,
                    (allocation, str(variant_id), str(test_id)),
                )

    def get_assignment(self, test_id: UUID, session_id: str) -> Optional[Assignment]:
        with self.db.get_cursor() as cur:
            cur.execute(
                """
                SELECT test_id, session_id, variant_id, created_at
                FROM ab_test_assignments
                WHERE test_id = %s AND session_id = %s
                """,
                (str(test_id), session_id),
            )
            row = cur.fetchone()

        if row is None:
            return None

        return Assignment(
            test_id=UUID(str(row[0])),
            session_id=row[1],
            variant_id=UUID(str(row[2])),
            created_at=row[3],
        )

    def create_assignment(
        self,
        assignment: Assignment,
        count_impression: bool = True,
    ) -> None:
        try:
            with self.db.get_cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO ab_test_assignments (test_id, session_id, variant_id, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (
                        str(assignment.test_id),
                        assignment.session_id,
                        str(assignment.variant_id),
                        assignment.created_at,
                    ),
                )
                if count_impression:
                    cur.execute(
                        """
                        UPDATE ab_test_variants
                        SET impressions = impressions + 1
                        WHERE id = %s
                        """,
                        (str(assignment.variant_id),),
                    )
        except errors.UniqueViolation as e:
            raise AssignmentConflict(
                f"Assignment already exists: test_id={assignment.test_id}, "
                f"session_id={assignment.session_id}"
            ) from e

    def record_conversion(
        self,
        event: ConversionEvent,
        assignment: Optional[Assignment] = None,
        conversions: int = 0,
        clicks: int = 0,
        total_value: float = 0.0,
    ) -> ConversionEvent:
        update = _counter_update(
            event.variant_id,
            conversions=conversions,
            clicks=clicks,
            total_value=total_value,
        )
        if event.id is None:
            event.id = uuid4()

        with self.db.get_cursor() as cur:
            if assignment is not None:
                # 同時に作られた割り当てがあればそちらを残す
                cur.execute(
                    """
                    INSERT INTO ab_test_assignments (test_id, session_id, variant_id, created_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (test_id, session_id) DO NOTHING
                    """,
                    (
                        str(assignment.test_id),
                        assignment.session_id,
                        str(assignment.variant_id),
                        assignment.created_at,
                    ),
                )

            cur.execute(
                """
                INSERT INTO ab_test_conversions
                (id, test_id, variant_id, session_id, event, value, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    str(event.id),
                    str(event.test_id),
                    str(event.variant_id),
                    event.session_id,
                    event.event,
                    event.value,
                    Json(event.metadata),
                    event.created_at,
                ),
            )

            if update is not None:
                cur.execute(*update)

        return event

    def increment_counters(
        self,
        variant_id: UUID,
        impressions: int = 0,
        conversions: int = 0,
        clicks: int = 0,
        total_value: float = 0.0,
    ) -> None:
        update = _counter_update(
            variant_id,
            impressions=impressions,
            conversions=conversions,
            clicks=clicks,
            total_value=total_value,
        )
        if update is None:
            return

        with self.db.get_cursor() as cur:
            cur.execute(*update)

    def archive_completed_before(self, cutoff: datetime) -> int:
        with self.db.get_cursor() as cur:
            cur.execute(
                """
                UPDATE ab_tests
                SET status = %s, updated_at = %s
                WHERE status = %s
                  AND end_date IS NOT NULL
                  AND end_date < %s
                """,
                (
                    TestStatus.ARCHIVED.value,
                    datetime.now(),
                    TestStatus.COMPLETED.value,
                    cutoff,
                ),
            )
            return cur.rowcount

    # ===== Private Methods =====

    def _row_to_test(self, row: tuple) -> ABTest:
        """DBの行をABTestに変換（バリアントは別途設定）"""
        return ABTest(
            id=UUID(str(row[0])),
            owner_id=row[1],
            name=row[2],
            description=row[3],
            type=TestType(row[4]),
            primary_metric=WinnerMetric(row[5]),
            secondary_metrics=[WinnerMetric(m) for m in (row[6] or [])],
            status=TestStatus(row[7]),
            confidence_level=float(row[8]),
            min_sample_size=int(row[9]),
            auto_select_winner=bool(row[10]),
            target_template_id=row[11],
            start_date=row[12],
            end_date=row[13],
            winner_id=UUID(str(row[14])) if row[14] else None,
            created_at=row[15],
            updated_at=row[16],
        )

    def _row_to_variant(self, row: tuple) -> Variant:
        """DBの行をVariantに変換"""
        return Variant(
            id=UUID(str(row[0])),
            test_id=UUID(str(row[1])),
            name=row[2],
            description=row[3],
            traffic_allocation=float(row[4]),
            content=row[5] or {},
            is_control=bool(row[6]),
            impressions=int(row[7]),
            conversions=int(row[8]),
            clicks=int(row[9]),
            total_value=float(row[10]),
            created_at=row[11],
        )


def _counter_update(variant_id: UUID, **counters: float) -> Optional[Tuple[str, List[Any]]]:
    """カウンター加算の UPDATE 文とパラメータを組み立てる

    0 のカウンターは SET 句に含めない。加算対象が無ければ None。

    Raises:
        ValueError: 負の値が渡された場合
    """
    increments = [(column, amount) for column, amount in counters.items() if amount]
    if not increments:
        return None

    if any(amount < 0 for _, amount in increments):
        raise ValueError("counters can only be incremented")

    assignments = ", ".join(f"{column} = {column} + %s" for column, _ in increments)
    params = [amount for _, amount in increments] + [str(variant_id)]
    return f"UPDATE ab_test_variants SET {assignments} WHERE id = %s", params
