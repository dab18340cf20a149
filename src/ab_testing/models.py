# A/Bテスト データモデル
"""
A/Bテストエンジンのデータ構造

- Variant / Experiment: 実験定義（レジストリが所有）
- MetricObservation: 被験者ごとの現在の観測値（メトリクスストアが所有）
- AggregateStatistics / VariantStatistics / AnalysisResult / ExperimentProgress /
  ExperimentReport: 都度計算される派生データ（保存しない）

全てのデータクラスは to_dict() / from_dict() で JSON 互換の辞書と相互変換できる。
日時は ISO 8601 文字列としてシリアライズする。
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


SECONDS_PER_DAY = 24 * 60 * 60


class MetricType(str, Enum):
    """メトリクスの種類（情報用。保存形式は変わらない）"""
    BINARY = "binary"    # 0/1（コンバージョン等）
    NUMERIC = "numeric"  # 連続値（売上、滞在時間等）
    COUNT = "count"      # 回数


class ExperimentStatus(str, Enum):
    """実験のステータス

    状態遷移:
        DRAFT → RUNNING → COMPLETED
                       └→ STOPPED
    """
    DRAFT = "draft"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"

    @property
    def is_finished(self) -> bool:
        """終了状態（completed / stopped）かどうか"""
        return self in (ExperimentStatus.COMPLETED, ExperimentStatus.STOPPED)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class Variant:
    """実験のバリアント（アーム）

    Attributes:
        id: 実験内で一意なバリアントID
        name: 表示名
        allocation: トラフィック配分（パーセント、0-100）
        description: 説明
        config: 呼び出し側に渡す任意の設定ペイロード
    """
    id: str
    name: str
    allocation: float
    description: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "allocation": self.allocation,
            "description": self.description,
            "config": copy.deepcopy(self.config),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variant":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            allocation=float(data["allocation"]),
            description=data.get("description"),
            config=dict(data.get("config") or {}),
        )


@dataclass
class Experiment:
    """A/Bテスト実験の定義

    レジストリのみが所有・更新する。呼び出し側に返すのは常にコピー。

    Attributes:
        id: 実験ID
        name: 実験名
        hypothesis: 仮説
        variants: バリアントのリスト（順序は割り当て時の累積範囲の順序）
        primary_metric: 主要メトリクス名
        secondary_metrics: 副次メトリクス名のリスト
        description: 説明
        targeting: ターゲティング条件（エンジンは解釈しない）
        status: ライフサイクル状態
        created_at / started_at / completed_at: 各種日時
        sample_size_required: 必要サンプルサイズ（対照群 + 実験群の合計）
        confidence_level: 信頼水準（デフォルト 0.95）
        min_detectable_effect: 最小検出効果
        winning_variant: 勝者バリアントID（完了時に明示された場合のみ）
        conclusion: 結論・停止理由
        metadata: 任意のメタデータ
    """
    id: str
    name: str
    variants: List[Variant]
    primary_metric: str
    hypothesis: str = ""
    secondary_metrics: List[str] = field(default_factory=list)
    description: Optional[str] = None
    targeting: Dict[str, Any] = field(default_factory=dict)
    status: ExperimentStatus = ExperimentStatus.DRAFT
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    sample_size_required: Optional[int] = None
    confidence_level: float = 0.95
    min_detectable_effect: Optional[float] = None
    winning_variant: Optional[str] = None
    conclusion: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def variant_ids(self) -> List[str]:
        return [v.id for v in self.variants]

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    def copy(self) -> "Experiment":
        return copy.deepcopy(self)

    def days_running(self, now: Optional[datetime] = None) -> float:
        """開始からの経過日数（終了済みの場合は終了時点まで）"""
        if self.started_at is None:
            return 0.0
        now = now or datetime.now()
        end = (self.completed_at if self.status.is_finished else None) or now
        return max((end - self.started_at).total_seconds(), 0.0) / SECONDS_PER_DAY

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（スナップショット・エクスポート用）"""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "hypothesis": self.hypothesis,
            "status": self.status.value,
            "variants": [v.to_dict() for v in self.variants],
            "primary_metric": self.primary_metric,
            "secondary_metrics": list(self.secondary_metrics),
            "targeting": copy.deepcopy(self.targeting),
            "created_at": _to_iso(self.created_at),
            "started_at": _to_iso(self.started_at),
            "completed_at": _to_iso(self.completed_at),
            "sample_size_required": self.sample_size_required,
            "confidence_level": self.confidence_level,
            "min_detectable_effect": self.min_detectable_effect,
            "winning_variant": self.winning_variant,
            "conclusion": self.conclusion,
            "metadata": copy.deepcopy(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Experiment":
        """辞書から実験を復元

        Raises:
            KeyError: 必須キー（id, name, variants, primary_metric）が無い場合
            ValueError: status や数値が不正な場合
        """
        sample_size = data.get("sample_size_required")
        mde = data.get("min_detectable_effect")
        confidence_level = data.get("confidence_level")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            description=data.get("description"),
            hypothesis=data.get("hypothesis") or "",
            status=ExperimentStatus(data.get("status") or ExperimentStatus.DRAFT.value),
            variants=[Variant.from_dict(v) for v in data["variants"]],
            primary_metric=str(data["primary_metric"]),
            secondary_metrics=list(data.get("secondary_metrics") or []),
            targeting=dict(data.get("targeting") or {}),
            created_at=_from_iso(data.get("created_at")) or datetime.now(),
            started_at=_from_iso(data.get("started_at")),
            completed_at=_from_iso(data.get("completed_at")),
            sample_size_required=int(sample_size) if sample_size is not None else None,
            confidence_level=float(confidence_level) if confidence_level is not None else 0.95,
            min_detectable_effect=float(mde) if mde is not None else None,
            winning_variant=data.get("winning_variant"),
            conclusion=data.get("conclusion"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class MetricObservation:
    """被験者ごとのメトリクス観測値

    (experiment_id, variant_id, subject_id, metric_name) ごとに現在の値を1件だけ保持する。
    同じキーへの後からの書き込みが前の値を置き換える（last-write-wins）。
    """
    experiment_id: str
    variant_id: str
    subject_id: str
    metric_name: str
    value: float
    timestamp: datetime = field(default_factory=datetime.now)
    kind: Optional[MetricType] = None

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.experiment_id, self.variant_id, self.subject_id, self.metric_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "variant_id": self.variant_id,
            "subject_id": self.subject_id,
            "metric_name": self.metric_name,
            "value": self.value,
            "timestamp": _to_iso(self.timestamp),
            "kind": self.kind.value if self.kind is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricObservation":
        kind = data.get("kind")
        return cls(
            experiment_id=str(data["experiment_id"]),
            variant_id=str(data["variant_id"]),
            subject_id=str(data["subject_id"]),
            metric_name=str(data["metric_name"]),
            value=float(data["value"]),
            timestamp=_from_iso(data.get("timestamp")) or datetime.now(),
            kind=MetricType(kind) if kind else None,
        )


@dataclass
class ConfidenceInterval:
    """信頼区間"""
    lower: float
    upper: float

    def to_dict(self) -> Dict[str, float]:
        return {"lower": self.lower, "upper": self.upper}


@dataclass
class AggregateStatistics:
    """(実験, バリアント, メトリクス) 単位の集計値"""
    metric_name: str
    variant_id: str
    count: int = 0
    sum: float = 0.0
    mean: float = 0.0
    variance: float = 0.0
    standard_deviation: float = 0.0
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric_name": self.metric_name,
            "variant_id": self.variant_id,
            "count": self.count,
            "sum": self.sum,
            "mean": self.mean,
            "variance": self.variance,
            "standard_deviation": self.standard_deviation,
            "min_value": self.min_value,
            "max_value": self.max_value,
        }


@dataclass
class VariantStatistics(AggregateStatistics):
    """バリアント統計（集計値 + 標準誤差・信頼区間）"""
    metric_type: MetricType = MetricType.NUMERIC
    conversion_rate: Optional[float] = None
    standard_error: Optional[float] = None
    confidence_interval: Optional[ConfidenceInterval] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "metric_type": self.metric_type.value,
            "conversion_rate": self.conversion_rate,
            "standard_error": self.standard_error,
            "confidence_interval": (
                self.confidence_interval.to_dict() if self.confidence_interval else None
            ),
        })
        return data


@dataclass
class AnalysisResult:
    """対照群 vs 実験群の仮説検定結果

    relative_uplift は対照群平均が 0 の場合に定義できないため、
    その場合は 0.0 とし uplift_defined=False とする。
    """
    experiment_id: str
    metric_name: str
    control_variant: str
    treatment_variant: str
    control_mean: float
    treatment_mean: float
    absolute_difference: float
    relative_uplift: float
    uplift_defined: bool
    p_value: float
    statistic: float
    significant: bool
    confidence_level: float
    sufficient_power: bool
    test_type: str
    control_sample_size: int
    treatment_sample_size: int
    confidence_interval: ConfidenceInterval
    absolute_confidence_interval: ConfidenceInterval
    degrees_of_freedom: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "metric_name": self.metric_name,
            "control_variant": self.control_variant,
            "treatment_variant": self.treatment_variant,
            "control_mean": self.control_mean,
            "treatment_mean": self.treatment_mean,
            "absolute_difference": self.absolute_difference,
            "relative_uplift": self.relative_uplift,
            "uplift_defined": self.uplift_defined,
            "p_value": self.p_value,
            "statistic": self.statistic,
            "degrees_of_freedom": self.degrees_of_freedom,
            "significant": self.significant,
            "confidence_level": self.confidence_level,
            "sufficient_power": self.sufficient_power,
            "test_type": self.test_type,
            "sample_size": {
                "control": self.control_sample_size,
                "treatment": self.treatment_sample_size,
            },
            "confidence_interval": self.confidence_interval.to_dict(),
            "absolute_confidence_interval": self.absolute_confidence_interval.to_dict(),
        }


@dataclass
class ExperimentProgress:
    """実験の進捗"""
    experiment_id: str
    status: ExperimentStatus
    total_sample_size: int
    required_sample_size: int
    percentage_complete: float
    complete: bool
    variant_sample_sizes: Dict[str, int] = field(default_factory=dict)
    days_running: float = 0.0
    estimated_completion: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "status": self.status.value,
            "total_sample_size": self.total_sample_size,
            "required_sample_size": self.required_sample_size,
            "percentage_complete": self.percentage_complete,
            "complete": self.complete,
            "variant_sample_sizes": dict(self.variant_sample_sizes),
            "days_running": self.days_running,
            "estimated_completion": _to_iso(self.estimated_completion),
        }


@dataclass
class VariantReport:
    """レポート内のバリアント別サマリー"""
    id: str
    name: str
    allocation: float
    sample_size: int
    metrics: Dict[str, VariantStatistics] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "allocation": self.allocation,
            "sample_size": self.sample_size,
            "metrics": {name: s.to_dict() for name, s in self.metrics.items()},
        }


@dataclass
class ExperimentReport:
    """実験レポート"""
    experiment_id: str
    name: str
    status: ExperimentStatus
    created_at: datetime
    started_at: Optional[datetime]
    days_running: float
    variants: List[VariantReport]
    winning_variant: Optional[str] = None
    significant: bool = False
    conclusion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "name": self.name,
            "status": self.status.value,
            "created_at": _to_iso(self.created_at),
            "started_at": _to_iso(self.started_at),
            "days_running": self.days_running,
            "variants": [v.to_dict() for v in self.variants],
            "summary": {
                "winning_variant": self.winning_variant,
                "significant": self.significant,
                "conclusion": self.conclusion,
            },
        }
