# A/B Testing Module
"""
A/Bテスト実験エンジン

実験の定義・決定論的なバリアント割り当て・メトリクス収集・統計分析を行う。

設計方針:
- 実験ライフサイクル: draft → running → {completed, stopped}
- "{experiment_id}:{subject_id}" のハッシュによる決定論的バリアント割り当て
- scipy.stats による統計的有意性分析（z 検定 / Welch の t 検定）
- JSON スナップショットによる永続化
"""

from src.ab_testing.analysis import ExperimentAnalyzer
from src.ab_testing.assignment import VariantAssigner
from src.ab_testing.errors import (
    ABTestingError,
    DuplicateExperimentError,
    ExperimentNotFoundError,
    InvalidAllocationError,
    InvalidTransitionError,
    PersistenceError,
    VariantNotFoundError,
)
from src.ab_testing.experiment_manager import ExperimentManager
from src.ab_testing.metrics_store import MetricsStore
from src.ab_testing.models import (
    AggregateStatistics,
    AnalysisResult,
    ConfidenceInterval,
    Experiment,
    ExperimentProgress,
    ExperimentReport,
    ExperimentStatus,
    MetricObservation,
    MetricType,
    Variant,
    VariantReport,
    VariantStatistics,
)
from src.ab_testing.persistence import JsonFileSnapshotStore, SnapshotStore
from src.ab_testing.registry import ExperimentRegistry

__all__ = [
    "ExperimentManager",
    "ExperimentRegistry",
    "VariantAssigner",
    "MetricsStore",
    "ExperimentAnalyzer",
    "SnapshotStore",
    "JsonFileSnapshotStore",
    "Experiment",
    "Variant",
    "ExperimentStatus",
    "MetricType",
    "MetricObservation",
    "ConfidenceInterval",
    "AggregateStatistics",
    "VariantStatistics",
    "AnalysisResult",
    "ExperimentProgress",
    "ExperimentReport",
    "VariantReport",
    "ABTestingError",
    "InvalidAllocationError",
    "DuplicateExperimentError",
    "ExperimentNotFoundError",
    "VariantNotFoundError",
    "InvalidTransitionError",
    "PersistenceError",
]
