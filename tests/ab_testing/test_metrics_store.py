# MetricsStore テスト
"""
MetricsStoreの単体テスト

検証観点:
- last-write-wins（同じ被験者・メトリクスは1件のみ）
- 集計値・バリアント統計（分散0の標本は標準偏差がちょうど0）
- 進捗（被験者の重複排除、上限100%）
- 並行書き込み（ThreadPoolExecutor）
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from src.ab_testing.errors import ExperimentNotFoundError, VariantNotFoundError
from src.ab_testing.metrics_store import MetricsStore, detect_metric_type
from src.ab_testing.models import ExperimentStatus, MetricObservation, MetricType
from src.ab_testing.registry import ExperimentRegistry


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def registry():
    registry = ExperimentRegistry()
    registry.create_experiment({
        "id": "exp",
        "name": "Experiment",
        "primary_metric": "conversion",
        "status": "running",
        "sample_size_required": 10,
        "variants": [
            {"id": "control", "name": "Control", "allocation": 50},
            {"id": "treatment", "name": "Treatment", "allocation": 50},
        ],
    })
    return registry


@pytest.fixture
def store(registry):
    return MetricsStore(registry, lock_stripes=8)


def obs(subject, value, variant="control", metric="conversion", kind=None):
    return MetricObservation(
        experiment_id="exp",
        variant_id=variant,
        subject_id=subject,
        metric_name=metric,
        value=value,
        kind=kind,
    )


# ============================================================================
# TestRecordMetric
# ============================================================================


class TestRecordMetric:
    """record_metric メソッドのテスト"""

    def test_record_and_read_back(self, store):
        store.record_metric(obs("u1", 1.0))
        observations = store.get_metrics("exp", "control", "conversion")
        assert len(observations) == 1
        assert observations[0].value == 1.0

    def test_last_write_wins(self, store):
        """同じ被験者の2回目の書き込みが1回目を置き換える"""
        store.record_metric(obs("u1", 1.0))
        store.record_metric(obs("u1", 0.0))

        observations = store.get_metrics("exp", "control", "conversion")
        assert [o.value for o in observations] == [0.0]

    def test_metrics_are_independent(self, store):
        store.record_metric(obs("u1", 1.0, metric="conversion"))
        store.record_metric(obs("u1", 25.0, metric="revenue"))
        assert len(store.get_metrics("exp", "control")) == 2

    def test_unknown_experiment(self, store):
        with pytest.raises(ExperimentNotFoundError):
            store.record_metric(MetricObservation("missing", "control", "u1", "conversion", 1.0))

    def test_unknown_variant(self, store):
        with pytest.raises(VariantNotFoundError):
            store.record_metric(obs("u1", 1.0, variant="nope"))

    def test_version_increments(self, store):
        before = store.version
        store.record_metric(obs("u1", 1.0))
        assert store.version > before

    def test_recorded_value_is_copy(self, store):
        original = obs("u1", 1.0)
        store.record_metric(original)
        original.value = 99.0
        assert store.get_metrics("exp", "control")[0].value == 1.0

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_value_rejected(self, store, value):
        """有限でない値は記録されず、変更カウンタも進まない"""
        before = store.version
        with pytest.raises(ValueError, match="finite"):
            store.record_metric(obs("u1", value, metric="revenue"))

        assert store.get_metrics("exp", "control") == []
        assert store.version == before

    def test_non_finite_value_keeps_statistics_finite(self, store):
        for i, value in enumerate([10.0, 12.0, 14.0]):
            store.record_metric(obs(f"u{i}", value, metric="revenue"))
        with pytest.raises(ValueError):
            store.record_metric(obs("u9", float("nan"), metric="revenue"))

        stats = store.get_variant_statistics("exp", "control", "revenue")
        assert stats.mean == pytest.approx(12.0)
        assert stats.standard_deviation == pytest.approx(2.0)

    def test_experiment_deleted_after_validation(self, registry, store):
        """検証の直後に実験が削除されても孤立した観測値を残さない"""
        validate = registry.require_variant

        def validate_then_delete(experiment_id, variant_id):
            variant = validate(experiment_id, variant_id)
            registry.delete_experiment(experiment_id)
            store.remove_experiment(experiment_id)
            return variant

        with patch.object(registry, "require_variant", side_effect=validate_then_delete):
            with pytest.raises(ExperimentNotFoundError):
                store.record_metric(obs("u1", 42.0, metric="revenue"))

        assert store.snapshot() == []


# ============================================================================
# TestAggregation
# ============================================================================


class TestAggregation:
    """集計系メソッドのテスト"""

    def test_aggregated_metrics(self, store):
        for i, value in enumerate([10.0, 20.0, 30.0]):
            store.record_metric(obs(f"u{i}", value, metric="revenue"))

        stats = store.get_aggregated_metrics("exp", "control", "revenue")
        assert stats.count == 3
        assert stats.sum == 60.0
        assert stats.mean == 20.0
        assert stats.variance == pytest.approx(100.0)
        assert stats.min_value == 10.0
        assert stats.max_value == 30.0

    def test_aggregated_empty(self, store):
        stats = store.get_aggregated_metrics("exp", "control", "revenue")
        assert stats.count == 0
        assert stats.mean == 0.0

    def test_zero_variance_std_is_exactly_zero(self, store):
        for i in range(50):
            store.record_metric(obs(f"u{i}", 3.3, metric="revenue"))
        stats = store.get_variant_statistics("exp", "control", "revenue")
        assert stats.standard_deviation == 0.0
        assert stats.standard_error == 0.0

    def test_variant_statistics_binary(self, store):
        for i in range(10):
            store.record_metric(obs(f"u{i}", 1.0 if i < 3 else 0.0))

        stats = store.get_variant_statistics("exp", "control", "conversion")
        assert stats.metric_type == MetricType.BINARY
        assert stats.conversion_rate == pytest.approx(0.3)
        assert stats.confidence_interval.lower < 0.3 < stats.confidence_interval.upper

    def test_single_observation_has_no_interval(self, store):
        store.record_metric(obs("u1", 12.0, metric="revenue"))
        stats = store.get_variant_statistics("exp", "control", "revenue")
        assert stats.standard_error is None
        assert stats.confidence_interval is None
        assert stats.conversion_rate is None


class TestDetectMetricType:
    def test_declared_binary_wins(self):
        assert detect_metric_type([obs("u1", 1.0, kind=MetricType.BINARY)]) == MetricType.BINARY

    def test_zero_one_values_are_binary(self):
        assert detect_metric_type([obs("u1", 0.0), obs("u2", 1.0)]) == MetricType.BINARY

    def test_declared_count(self):
        assert detect_metric_type([obs("u1", 4.0, kind=MetricType.COUNT)]) == MetricType.COUNT

    def test_numeric_default(self):
        assert detect_metric_type([obs("u1", 4.5)]) == MetricType.NUMERIC


# ============================================================================
# TestProgress
# ============================================================================


class TestProgress:
    """get_experiment_progress メソッドのテスト"""

    def test_counts_distinct_subjects(self, store):
        """複数メトリクスを持つ被験者も1人として数える"""
        store.record_metric(obs("u1", 1.0, metric="conversion"))
        store.record_metric(obs("u1", 9.0, metric="revenue"))
        store.record_metric(obs("u2", 0.0, variant="treatment"))

        progress = store.get_experiment_progress("exp")
        assert progress.total_sample_size == 2
        assert progress.required_sample_size == 10
        assert progress.percentage_complete == pytest.approx(20.0)
        assert progress.variant_sample_sizes == {"control": 1, "treatment": 1}
        assert progress.complete is False

    def test_percentage_capped(self, store):
        for i in range(25):
            store.record_metric(obs(f"u{i}", 1.0))
        progress = store.get_experiment_progress("exp")
        assert progress.percentage_complete == 100.0
        assert progress.complete is True
        assert progress.estimated_completion is None

    def test_default_required(self, registry, store):
        registry.create_experiment({
            "id": "no_target",
            "name": "No target",
            "primary_metric": "conversion",
            "variants": [{"id": "control", "name": "C", "allocation": 100}],
        })
        progress = store.get_experiment_progress("no_target", default_required=500)
        assert progress.required_sample_size == 500
        assert progress.status == ExperimentStatus.DRAFT

    def test_estimated_completion(self, registry, store):
        started = registry.get_experiment("exp").started_at
        for i in range(5):
            store.record_metric(obs(f"u{i}", 1.0))

        progress = store.get_experiment_progress("exp", now=started + timedelta(days=1))
        assert progress.days_running == pytest.approx(1.0)
        # 5人/日 → 残り5人で約1日
        assert progress.estimated_completion == started + timedelta(days=2)

    def test_unknown_experiment(self, store):
        with pytest.raises(ExperimentNotFoundError):
            store.get_experiment_progress("missing")


# ============================================================================
# TestConcurrency
# ============================================================================


class TestConcurrency:
    """並行書き込みのテスト"""

    def test_parallel_distinct_subjects(self, store):
        """異なる被験者への並行書き込みは全て保持される"""
        def write(i):
            variant = "control" if i % 2 else "treatment"
            store.record_metric(obs(f"u{i}", float(i % 2), variant=variant))

        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(write, range(1000)))

        total = (
            len(store.get_metrics("exp", "control", "conversion"))
            + len(store.get_metrics("exp", "treatment", "conversion"))
        )
        assert total == 1000

    def test_parallel_same_key(self, store):
        """同じキーへの並行書き込みは1件に収束し、値は書き込まれたいずれか"""
        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(lambda i: store.record_metric(obs("u1", float(i))), range(200)))

        observations = store.get_metrics("exp", "control", "conversion")
        assert len(observations) == 1
        assert 0.0 <= observations[0].value < 200.0

    def test_read_while_writing(self, store):
        def write(i):
            store.record_metric(obs(f"u{i}", 1.0))

        def read(_):
            return store.get_aggregated_metrics("exp", "control", "conversion").count

        with ThreadPoolExecutor(max_workers=8) as executor:
            writes = [executor.submit(write, i) for i in range(300)]
            reads = [executor.submit(read, i) for i in range(100)]
            for future in writes + reads:
                future.result()

        assert store.get_aggregated_metrics("exp", "control", "conversion").count == 300


# ============================================================================
# TestSnapshot
# ============================================================================


class TestSnapshot:
    def test_remove_experiment(self, store):
        store.record_metric(obs("u1", 1.0))
        store.record_metric(obs("u2", 0.0, variant="treatment"))
        assert store.remove_experiment("exp") == 2
        assert store.get_all_metrics("exp") == []

    def test_snapshot_restore(self, registry, store):
        store.record_metric(obs("u1", 1.0, kind=MetricType.BINARY))
        store.record_metric(obs("u2", 42.0, variant="treatment", metric="revenue"))

        restored = MetricsStore(registry)
        assert restored.restore(store.snapshot()) == 2

        observation = restored.get_metrics("exp", "control")[0]
        assert observation.kind == MetricType.BINARY
        assert restored.get_metrics("exp", "treatment", "revenue")[0].value == 42.0

    def test_timestamp_round_trip(self, registry, store):
        stamp = datetime(2026, 3, 1, 12, 30)
        record = obs("u1", 1.0)
        record.timestamp = stamp
        store.record_metric(record)

        restored = MetricsStore(registry)
        restored.restore(store.snapshot())
        assert restored.get_metrics("exp", "control")[0].timestamp == stamp

    def test_discard_orphans(self, registry, store):
        """レジストリから消えた実験の観測値だけを削除する"""
        store.record_metric(obs("u1", 1.0))
        assert store.discard_orphans("exp") == 0
        assert len(store.get_all_metrics("exp")) == 1

        registry.delete_experiment("exp")
        assert store.discard_orphans("exp") == 1
        assert store.snapshot() == []

    def test_restore_drops_orphaned_and_invalid_rows(self, registry, store):
        store.record_metric(obs("u1", 1.0))
        rows = store.snapshot()
        rows.append(dict(rows[0], experiment_id="deleted"))
        rows.append(dict(rows[0], variant_id="ghost"))
        rows.append(dict(rows[0], subject_id="u2", value=float("nan")))

        restored = MetricsStore(registry)
        assert restored.restore(rows) == 1
        assert restored.get_all_metrics("deleted") == []
        assert [o.subject_id for o in restored.get_all_metrics("exp")] == ["u1"]
