# A/Bテスト メトリクスストア
"""
MetricsStore: 被験者ごとのメトリクス観測値を保持・集計する

設計方針:
- (実験, バリアント, 被験者, メトリクス) ごとに現在の観測値を1件だけ保持（last-write-wins）
  過去の値の履歴は保持しない
- 観測値は (実験, バリアント, メトリクス) 単位のパーティションに格納する
- 書き込みはキー全体から選んだストライプロックで直列化する
  → 同じキーへの書き込みは順序が確定し、異なる被験者同士はほぼ競合しない
- 読み取りはパーティションをコピーしてから集計する（書き込みをブロックしない）
- 集計値・統計量は保存せず、要求時に計算する
"""

import dataclasses
import itertools
import logging
import math
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from src.ab_testing.models import (
    AggregateStatistics,
    ConfidenceInterval,
    ExperimentProgress,
    MetricObservation,
    MetricType,
    VariantStatistics,
)
from src.ab_testing.registry import ExperimentRegistry
from src.ab_testing.statistics import is_binary, summarize, z_critical


logger = logging.getLogger(__name__)

# (experiment_id, variant_id, metric_name)
PartitionKey = Tuple[str, str, str]


def detect_metric_type(observations: Iterable[MetricObservation]) -> MetricType:
    """観測値からメトリクスの種類を判定

    いずれかの観測値が binary と宣言されていれば binary、
    宣言が無く全ての値が 0/1 なら binary、それ以外は宣言された種類（無ければ numeric）。
    """
    observations = list(observations)
    declared = [o.kind for o in observations if o.kind is not None]
    if MetricType.BINARY in declared:
        return MetricType.BINARY
    if is_binary(o.value for o in observations):
        return MetricType.BINARY
    return declared[0] if declared else MetricType.NUMERIC


class MetricsStore:
    """メトリクス観測値のストア

    使用例:
        store = MetricsStore(registry)
        store.record_metric(MetricObservation(
            experiment_id="checkout_button",
            variant_id="treatment",
            subject_id="user_123",
            metric_name="conversion",
            value=1.0,
            kind=MetricType.BINARY,
        ))
        stats = store.get_variant_statistics("checkout_button", "treatment", "conversion")
    """

    def __init__(self, registry: ExperimentRegistry, lock_stripes: int = 64):
        """MetricsStoreを初期化

        Args:
            registry: 実験・バリアントの存在確認に使うレジストリ
            lock_stripes: 書き込み用ストライプロックの数
        """
        if lock_stripes <= 0:
            raise ValueError("lock_stripes must be positive")
        self.registry = registry
        self._partitions: Dict[PartitionKey, Dict[str, MetricObservation]] = {}
        self._partitions_lock = Lock()
        self._stripes = [Lock() for _ in range(lock_stripes)]
        self._mutations = itertools.count(1)
        self._version = 0

    @property
    def version(self) -> int:
        """変更カウンタ（永続化のダーティ判定用）"""
        return self._version

    # ===== 書き込み =====

    def record_metric(self, observation: MetricObservation) -> MetricObservation:
        """メトリクスを記録

        同じ (実験, バリアント, 被験者, メトリクス) の既存の観測値は置き換える。
        書き込みは直後の読み取りから見える。

        Args:
            observation: 観測値

        Returns:
            保存した観測値のコピー

        Raises:
            ValueError: 値が有限の数値でない場合
            ExperimentNotFoundError: 実験が見つからない場合
            VariantNotFoundError: バリアントが見つからない場合
        """
        value = float(observation.value)
        if not math.isfinite(value):
            raise ValueError(
                f"Metric value must be finite, got {observation.value!r} "
                f"for {observation.metric_name}"
            )
        self.registry.require_variant(observation.experiment_id, observation.variant_id)

        stored = dataclasses.replace(observation, value=value)
        partition = self._get_partition(
            (stored.experiment_id, stored.variant_id, stored.metric_name),
            create=True,
        )
        with self._stripe_for(stored.key):
            replaced = stored.subject_id in partition
            partition[stored.subject_id] = stored
            self._version = next(self._mutations)

        logger.debug(
            "Recorded %s=%s for %s/%s/%s%s",
            stored.metric_name, stored.value, stored.experiment_id,
            stored.variant_id, stored.subject_id, " (replaced)" if replaced else "",
        )
        return dataclasses.replace(stored)

    def remove_experiment(self, experiment_id: str) -> int:
        """実験の全観測値を削除

        Returns:
            削除した観測値の件数
        """
        with self._partitions_lock:
            removed = self._pop_experiment_locked(experiment_id)
        if removed:
            logger.info("Removed %d observations of experiment %s", removed, experiment_id)
        return removed

    def discard_orphans(self, experiment_id: str) -> int:
        """レジストリに存在しない実験の観測値が残っていれば削除

        同じIDで実験を作り直す前に呼ぶ。実験が登録済みなら何もしない。

        Returns:
            削除した観測値の件数
        """
        with self._partitions_lock:
            if experiment_id in self.registry:
                return 0
            removed = self._pop_experiment_locked(experiment_id)
        if removed:
            logger.warning(
                "Discarded %d orphaned observations of experiment %s", removed, experiment_id,
            )
        return removed

    # ===== 読み取り =====

    def get_metrics(
        self,
        experiment_id: str,
        variant_id: str,
        metric_name: Optional[str] = None,
    ) -> List[MetricObservation]:
        """バリアントの現在の観測値を取得

        Args:
            experiment_id: 実験ID
            variant_id: バリアントID
            metric_name: メトリクス名。Noneの場合は全メトリクス。

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            VariantNotFoundError: バリアントが見つからない場合
        """
        self.registry.require_variant(experiment_id, variant_id)
        return [
            dataclasses.replace(o)
            for o in self._collect(experiment_id, variant_id, metric_name)
        ]

    def get_all_metrics(self, experiment_id: str) -> List[MetricObservation]:
        """実験の全観測値を取得（エクスポート用）"""
        return [dataclasses.replace(o) for o in self._collect(experiment_id)]

    def get_aggregated_metrics(
        self,
        experiment_id: str,
        variant_id: str,
        metric_name: str,
    ) -> AggregateStatistics:
        """バリアントのメトリクス集計値（count, sum, mean, 分散, 標準偏差, min, max）"""
        self.registry.require_variant(experiment_id, variant_id)
        values = [o.value for o in self._collect(experiment_id, variant_id, metric_name)]
        summary = summarize(values)
        return AggregateStatistics(
            metric_name=metric_name,
            variant_id=variant_id,
            count=summary.count,
            sum=summary.sum,
            mean=summary.mean,
            variance=summary.variance,
            standard_deviation=summary.standard_deviation,
            min_value=summary.min_value,
            max_value=summary.max_value,
        )

    def get_variant_statistics(
        self,
        experiment_id: str,
        variant_id: str,
        metric_name: str,
        confidence_level: float = 0.95,
    ) -> VariantStatistics:
        """バリアント統計（標準誤差・平均の信頼区間付き）

        標準偏差は1件以下や分散0の標本でちょうど 0 になる。
        標準誤差と信頼区間は2件以上ある場合のみ計算する。
        """
        self.registry.require_variant(experiment_id, variant_id)
        observations = self._collect(experiment_id, variant_id, metric_name)
        summary = summarize([o.value for o in observations])
        metric_type = detect_metric_type(observations)

        standard_error = None
        interval = None
        if summary.count > 1:
            standard_error = summary.standard_deviation / math.sqrt(summary.count)
            margin = z_critical(confidence_level) * standard_error
            interval = ConfidenceInterval(summary.mean - margin, summary.mean + margin)

        return VariantStatistics(
            metric_name=metric_name,
            variant_id=variant_id,
            count=summary.count,
            sum=summary.sum,
            mean=summary.mean,
            variance=summary.variance,
            standard_deviation=summary.standard_deviation,
            min_value=summary.min_value,
            max_value=summary.max_value,
            metric_type=metric_type,
            conversion_rate=summary.mean if metric_type == MetricType.BINARY else None,
            standard_error=standard_error,
            confidence_interval=interval,
        )

    def get_experiment_progress(
        self,
        experiment_id: str,
        default_required: int = 1000,
        now: Optional[datetime] = None,
    ) -> ExperimentProgress:
        """実験の進捗

        total_sample_size は全バリアントで1件以上の観測値を持つ被験者の数。
        必要サンプル数は実験の sample_size_required（未設定時は default_required）。

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        experiment = self.registry.require_experiment(experiment_id)
        now = now or datetime.now()

        subjects: Set[str] = set()
        variant_sample_sizes: Dict[str, int] = {}
        for variant in experiment.variants:
            variant_subjects = {
                o.subject_id for o in self._collect(experiment_id, variant.id)
            }
            variant_sample_sizes[variant.id] = len(variant_subjects)
            subjects |= variant_subjects

        total = len(subjects)
        required = experiment.sample_size_required or default_required
        percentage = min(100.0, total / required * 100.0) if required > 0 else 100.0

        days_running = experiment.days_running(now)

        estimated_completion = None
        if (
            experiment.started_at is not None
            and not experiment.status.is_finished
            and 0 < total < required
        ):
            rate_per_day = total / max(days_running, 0.01)
            days_remaining = (required - total) / rate_per_day
            estimated_completion = now + timedelta(days=days_remaining)

        return ExperimentProgress(
            experiment_id=experiment_id,
            status=experiment.status,
            total_sample_size=total,
            required_sample_size=required,
            percentage_complete=percentage,
            complete=total >= required,
            variant_sample_sizes=variant_sample_sizes,
            days_running=days_running,
            estimated_completion=estimated_completion,
        )

    # ===== スナップショット =====

    def snapshot(self) -> List[Dict[str, Any]]:
        """全観測値の辞書表現（時点コピー）"""
        return [o.to_dict() for o in self._collect()]

    def restore(self, observations: Iterable[Dict[str, Any]]) -> int:
        """スナップショットから観測値を復元（既存の内容は置き換える）

        レジストリを先に復元しておくこと。レジストリに無い実験・バリアントの行と
        有限でない値の行は読み込まずに捨てる。

        Returns:
            復元した観測値の件数
        """
        partitions: Dict[PartitionKey, Dict[str, MetricObservation]] = {}
        known_variants: Dict[str, Set[str]] = {}
        count = 0
        dropped = 0
        for data in observations:
            observation = MetricObservation.from_dict(data)
            if observation.experiment_id not in known_variants:
                experiment = self.registry.get_experiment(observation.experiment_id)
                known_variants[observation.experiment_id] = (
                    set(experiment.variant_ids) if experiment is not None else set()
                )
            if (
                observation.variant_id not in known_variants[observation.experiment_id]
                or not math.isfinite(observation.value)
            ):
                dropped += 1
                continue
            key = (observation.experiment_id, observation.variant_id, observation.metric_name)
            partitions.setdefault(key, {})[observation.subject_id] = observation
            count += 1

        if dropped:
            logger.warning("Dropped %d invalid or orphaned observations from snapshot", dropped)

        with self._partitions_lock:
            self._partitions = partitions
        return count

    # ===== Private Methods =====

    def _get_partition(
        self,
        key: PartitionKey,
        create: bool = False,
    ) -> Optional[Dict[str, MetricObservation]]:
        partition = self._partitions.get(key)
        if partition is not None or not create:
            return partition
        with self._partitions_lock:
            # 検証後に削除された実験のパーティションは作らない
            self.registry.require_variant(key[0], key[1])
            return self._partitions.setdefault(key, {})

    def _pop_experiment_locked(self, experiment_id: str) -> int:
        keys = [k for k in self._partitions if k[0] == experiment_id]
        removed = sum(len(self._partitions.pop(k)) for k in keys)
        if keys:
            self._version = next(self._mutations)
        return removed

    def _stripe_for(self, key: Tuple[str, str, str, str]) -> Lock:
        return self._stripes[hash(key) % len(self._stripes)]

    def _collect(
        self,
        experiment_id: Optional[str] = None,
        variant_id: Optional[str] = None,
        metric_name: Optional[str] = None,
    ) -> List[MetricObservation]:
        """条件に合う観測値を時点コピーで集める"""
        with self._partitions_lock:
            partitions = [
                partition for (exp_id, var_id, name), partition in self._partitions.items()
                if (experiment_id is None or exp_id == experiment_id)
                and (variant_id is None or var_id == variant_id)
                and (metric_name is None or name == metric_name)
            ]

        observations: List[MetricObservation] = []
        for partition in partitions:
            observations.extend(list(partition.values()))
        return observations
