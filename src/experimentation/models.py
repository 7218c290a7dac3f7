# A/Bテスト実験のデータモデル
"""
実験エンジンのデータモデル

永続化エンティティ:
- ABTest: 実験本体（ステータス、信頼水準、最小サンプル数、勝者）
- Variant: 実験に属するバリアント（配分、累積カウンター）
- Assignment: (test_id, session_id) → variant_id の固定割り当て
- ConversionEvent: 追記専用のコンバージョンイベントログ

分析用レコード（ステージごとに型を分ける）:
- VariantSnapshot: 統計分析に渡すカウンターのスナップショット
- VariantResult: バリアント単位の統計結果
- WinnerDecision: 勝者判定結果
- TestResult: 実験全体の分析結果
- TestSummary: 日次サマリー
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from src.experimentation.errors import ExperimentValidationError


class TestStatus(str, Enum):
    """実験のステータス

    遷移: draft → running ⇄ paused → completed → archived
    """
    __test__ = False

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


# 設定変更を受け付けない終了状態
TERMINAL_STATUSES = frozenset({TestStatus.COMPLETED, TestStatus.ARCHIVED})


class TestType(str, Enum):
    """実験の種類"""
    __test__ = False

    PRICING_PRESENTATION = "pricing_presentation"
    TEMPLATE = "template"
    EMAIL_SUBJECT = "email_subject"
    LANDING_PAGE = "landing_page"
    CTA_BUTTON = "cta_button"
    CUSTOM = "custom"


class WinnerMetric(str, Enum):
    """勝者判定に用いる指標"""
    CONVERSION_RATE = "conversion_rate"
    VIEW_RATE = "view_rate"
    ENGAGEMENT_TIME = "engagement_time"
    CLICK_RATE = "click_rate"
    APPROVAL_RATE = "approval_rate"
    REVENUE = "revenue"


# コンバージョンとして数えるイベント
CONVERSION_EVENTS = frozenset({"approval", "sign", "conversion"})

# クリックとして数えるイベント
CLICK_EVENTS = frozenset({"click"})


@dataclass
class Variant:
    """実験バリアント

    Attributes:
        id: バリアントID
        test_id: 所属する実験ID
        name: バリアント名
        traffic_allocation: 新規セッションの配分率（0-100）
        content: バリアント固有のコンテンツ（割り当て時に返す）
        is_control: コントロール群かどうか
        description: 説明
        impressions: 表示回数（割り当て数）
        conversions: コンバージョン数
        clicks: クリック数
        total_value: コンバージョン値の合計
        created_at: 作成日時
    """
    id: UUID
    test_id: UUID
    name: str
    traffic_allocation: float
    content: Dict[str, Any] = field(default_factory=dict)
    is_control: bool = False
    description: Optional[str] = None
    impressions: int = 0
    conversions: int = 0
    clicks: int = 0
    total_value: float = 0.0
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def conversion_rate(self) -> float:
        """コンバージョン率（表示0件なら0）"""
        if self.impressions == 0:
            return 0.0
        return self.conversions / self.impressions

    def to_snapshot(self) -> "VariantSnapshot":
        """統計分析用のスナップショットに変換"""
        return VariantSnapshot(
            variant_id=self.id,
            variant_name=self.name,
            is_control=self.is_control,
            impressions=self.impressions,
            conversions=self.conversions,
            clicks=self.clicks,
            total_value=self.total_value,
        )

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "id": str(self.id),
            "test_id": str(self.test_id),
            "name": self.name,
            "description": self.description,
            "traffic_allocation": self.traffic_allocation,
            "content": self.content,
            "is_control": self.is_control,
            "impressions": self.impressions,
            "conversions": self.conversions,
            "clicks": self.clicks,
            "total_value": self.total_value,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ABTest:
    """A/Bテスト実験

    Attributes:
        id: 実験ID
        owner_id: 所有ユーザーID（コアでは不透明な値として扱う）
        name: 実験名
        type: 実験の種類
        primary_metric: 主要指標
        status: ステータス
        variants: バリアント（保存順）
        description: 説明
        secondary_metrics: 副次指標（順序付き）
        confidence_level: 信頼水準（0.80-0.99）
        min_sample_size: 勝者判定に必要な最小コンバージョン数
        auto_select_winner: 勝者を自動選択するか
        target_template_id: テンプレート実験の対象テンプレートID
        start_date: 開始日時
        end_date: 終了日時
        winner_id: 勝者バリアントID
        created_at: 作成日時
        updated_at: 更新日時
    """
    id: UUID
    owner_id: str
    name: str
    type: TestType
    primary_metric: WinnerMetric
    status: TestStatus = TestStatus.DRAFT
    variants: List[Variant] = field(default_factory=list)
    description: Optional[str] = None
    secondary_metrics: List[WinnerMetric] = field(default_factory=list)
    confidence_level: float = 0.95
    min_sample_size: int = 100
    auto_select_winner: bool = True
    target_template_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    winner_id: Optional[UUID] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def control(self) -> Optional[Variant]:
        """コントロールバリアント"""
        for variant in self.variants:
            if variant.is_control:
                return variant
        return None

    @property
    def is_terminal(self) -> bool:
        """設定変更できない終了状態かどうか"""
        return self.status in TERMINAL_STATUSES

    def get_variant(self, variant_id: UUID) -> Optional[Variant]:
        """IDでバリアントを取得"""
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "id": str(self.id),
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "primary_metric": self.primary_metric.value,
            "secondary_metrics": [m.value for m in self.secondary_metrics],
            "status": self.status.value,
            "confidence_level": self.confidence_level,
            "min_sample_size": self.min_sample_size,
            "auto_select_winner": self.auto_select_winner,
            "target_template_id": self.target_template_id,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "winner_id": str(self.winner_id) if self.winner_id else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "variants": [v.to_dict() for v in self.variants],
        }


@dataclass
class Assignment:
    """セッションへのバリアント割り当て（一度作成したら変更しない）"""
    test_id: UUID
    session_id: str
    variant_id: UUID
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class ConversionEvent:
    """コンバージョンイベント（追記専用）"""
    test_id: UUID
    variant_id: UUID
    session_id: str
    event: str
    value: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[UUID] = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class AssignmentResult:
    """割り当て結果

    Attributes:
        variant_id: 割り当てられたバリアントID
        content: バリアントのコンテンツ
        is_new: 今回の呼び出しで新規に割り当てたか
    """
    variant_id: UUID
    content: Dict[str, Any]
    is_new: bool = False


# ===== 作成・更新リクエスト =====


@dataclass
class VariantSpec:
    """実験作成時のバリアント定義"""
    name: str
    traffic_allocation: float
    content: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    is_control: bool = False


@dataclass
class CreateTestRequest:
    """実験作成リクエスト"""
    name: str
    type: TestType
    primary_metric: WinnerMetric
    variants: List[VariantSpec]
    description: Optional[str] = None
    secondary_metrics: List[WinnerMetric] = field(default_factory=list)
    confidence_level: Optional[float] = None
    min_sample_size: Optional[int] = None
    auto_select_winner: bool = True
    target_template_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreateTestRequest":
        """辞書形式（YAML定義など）から作成

        Raises:
            ExperimentValidationError: 列挙値やバリアント定義が不正な場合
        """
        try:
            variants = [
                VariantSpec(
                    name=v["name"],
                    traffic_allocation=float(v["traffic_allocation"]),
                    content=v.get("content") or {},
                    description=v.get("description"),
                    is_control=bool(v.get("is_control", False)),
                )
                for v in data.get("variants") or []
            ]
            return cls(
                name=data["name"],
                type=TestType(data.get("type", TestType.CUSTOM.value)),
                primary_metric=WinnerMetric(
                    data.get("primary_metric", WinnerMetric.CONVERSION_RATE.value)
                ),
                variants=variants,
                description=data.get("description"),
                secondary_metrics=[
                    WinnerMetric(m) for m in data.get("secondary_metrics") or []
                ],
                confidence_level=data.get("confidence_level"),
                min_sample_size=data.get("min_sample_size"),
                auto_select_winner=bool(data.get("auto_select_winner", True)),
                target_template_id=data.get("target_template_id"),
                start_date=_parse_datetime(data.get("start_date")),
                end_date=_parse_datetime(data.get("end_date")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ExperimentValidationError(f"Invalid test definition: {e}") from e


@dataclass
class TestPatch:
    """実験更新パッチ（None のフィールドは更新しない）"""
    __test__ = False

    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TestStatus] = None
    min_sample_size: Optional[int] = None
    auto_select_winner: Optional[bool] = None
    end_date: Optional[datetime] = None

    def to_fields(self) -> Dict[str, Any]:
        """更新対象フィールドの辞書に変換"""
        return {
            key: value
            for key, value in (
                ("name", self.name),
                ("description", self.description),
                ("status", self.status),
                ("min_sample_size", self.min_sample_size),
                ("auto_select_winner", self.auto_select_winner),
                ("end_date", self.end_date),
            )
            if value is not None
        }


@dataclass
class AllocationUpdate:
    """トラフィック配分の更新"""
    variant_id: UUID
    traffic_allocation: float


# ===== 分析レコード =====


@dataclass(frozen=True)
class VariantSnapshot:
    """統計分析に渡すバリアントカウンターのスナップショット"""
    variant_id: UUID
    variant_name: str
    is_control: bool
    impressions: int
    conversions: int
    clicks: int = 0
    total_value: float = 0.0

    @property
    def conversion_rate(self) -> float:
        """コンバージョン率（[0, 1] に切り詰める）

        1セッションの複数コンバージョンや遅れて届いたイベントで
        conversions が impressions を超えても率は 1 を上限とする。
        """
        if self.impressions == 0:
            return 0.0
        return min(1.0, self.conversions / self.impressions)


@dataclass
class VariantResult:
    """バリアント単位の統計結果

    relative_improvement は比率（0.6 = +60%）。コントロール率が0なら None。
    p_value / is_significant はコントロール以外のバリアントでのみ設定される。
    """
    variant_id: UUID
    variant_name: str
    is_control: bool
    impressions: int
    conversions: int
    conversion_rate: float
    avg_value: float
    total_value: float
    standard_error: float
    confidence_interval: Tuple[float, float]
    relative_improvement: Optional[float] = None
    p_value: Optional[float] = None
    is_significant: Optional[bool] = None
    probability_to_be_best: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "variant_id": str(self.variant_id),
            "variant_name": self.variant_name,
            "is_control": self.is_control,
            "impressions": self.impressions,
            "conversions": self.conversions,
            "conversion_rate": self.conversion_rate,
            "avg_value": self.avg_value,
            "total_value": self.total_value,
            "standard_error": self.standard_error,
            "confidence_interval": {
                "lower": self.confidence_interval[0],
                "upper": self.confidence_interval[1],
            },
            "relative_improvement": self.relative_improvement,
            "p_value": self.p_value,
            "is_significant": self.is_significant,
            "probability_to_be_best": self.probability_to_be_best,
        }


@dataclass
class WinnerDecision:
    """勝者判定結果"""
    has_winner: bool
    winner_id: Optional[UUID] = None
    winner_name: Optional[str] = None


@dataclass
class TestResult:
    """実験全体の分析結果"""
    __test__ = False

    test_id: UUID
    test_name: str
    status: TestStatus
    primary_metric: WinnerMetric
    confidence_level: float
    min_sample_size: int
    total_impressions: int
    total_conversions: int
    variants: List[VariantResult]
    has_winner: bool
    statistical_power: float
    recommendation: str
    winner_id: Optional[UUID] = None
    winner_name: Optional[str] = None
    days_to_significance: Optional[int] = None
    sample_ratio_p_value: Optional[float] = None

    @property
    def is_statistically_significant(self) -> bool:
        return self.has_winner

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {
            "test_id": str(self.test_id),
            "test_name": self.test_name,
            "status": self.status.value,
            "primary_metric": self.primary_metric.value,
            "confidence_level": self.confidence_level,
            "min_sample_size": self.min_sample_size,
            "total_impressions": self.total_impressions,
            "total_conversions": self.total_conversions,
            "variants": [v.to_dict() for v in self.variants],
            "has_winner": self.has_winner,
            "winner_id": str(self.winner_id) if self.winner_id else None,
            "winner_name": self.winner_name,
            "statistical_power": self.statistical_power,
            "is_statistically_significant": self.is_statistically_significant,
            "recommendation": self.recommendation,
            "days_to_significance": self.days_to_significance,
            "sample_ratio_p_value": self.sample_ratio_p_value,
        }


@dataclass
class TestSummary:
    """実行中実験の日次サマリー（読み取り専用）"""
    __test__ = False

    test_id: UUID
    test_name: str
    owner_id: str
    total_impressions: int
    total_conversions: int
    has_winner: bool
    winner_name: Optional[str] = None

    @property
    def message(self) -> str:
        winner = f"Winner: {self.winner_name}" if self.has_winner else "No winner yet"
        return f'Test "{self.test_name}": {self.total_conversions} conversions, {winner}'


def _parse_datetime(value: Any) -> Optional[datetime]:
    """YAML/JSON 由来の日時値を datetime に変換"""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
