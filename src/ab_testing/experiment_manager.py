# A/Bテスト実験管理
"""
ExperimentManager: A/Bテストエンジンの公開APIを束ねるファサード

設計方針:
- 実験ライフサイクル: draft → running → {completed, stopped}
- 決定論的バリアント割り当て: "{experiment_id}:{subject_id}" のハッシュでバリアント選択
- 統計分析: 比率は z 検定、連続値は Welch の t 検定（scipy.stats）
- 永続化: 時点スナップショットを取り、ロックの外でファイルに書き込む
  変更カウンタでダーティ判定し、失敗時はダーティのまま次回リトライする
- バックグラウンドタイマー: 自動保存・古い実験のクリーンアップ（デーモンスレッド）
"""

import asyncio
import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from src.ab_testing.analysis import ExperimentAnalyzer
from src.ab_testing.assignment import VariantAssigner
from src.ab_testing.errors import ABTestingError, PersistenceError
from src.ab_testing.metrics_store import MetricsStore
from src.ab_testing.models import (
    AggregateStatistics,
    AnalysisResult,
    Experiment,
    ExperimentProgress,
    ExperimentReport,
    ExperimentStatus,
    MetricObservation,
    Variant,
    VariantStatistics,
)
from src.ab_testing.persistence import (
    JsonFileSnapshotStore,
    SnapshotStore,
    build_snapshot,
)
from src.ab_testing.registry import ExperimentRegistry
from src.ab_testing.reporting import (
    format_analysis,
    format_experiment_detail,
    format_experiment_list,
)
from src.config.ab_testing_config import ABTestingConfig


logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"


class ExperimentManager:
    """A/Bテスト実験管理クラス

    実験の作成・実行・メトリクス収集・統計分析・永続化を行う。
    全ての公開メソッドはスレッドセーフ。

    使用例:
        config = ABTestingConfig(db_path="data/ab_testing.json")
        with ExperimentManager(config) as manager:
            manager.create_experiment({
                "id": "checkout_button",
                "name": "Checkout button color",
                "hypothesis": "Green increases conversion",
                "primary_metric": "conversion",
                "variants": [
                    {"id": "control", "name": "Blue", "allocation": 50},
                    {"id": "treatment", "name": "Green", "allocation": 50},
                ],
            })
            manager.start_experiment("checkout_button")

            variant = manager.assign_variant("checkout_button", "user_123")
            manager.record_metric(MetricObservation(
                experiment_id="checkout_button",
                variant_id=variant.id,
                subject_id="user_123",
                metric_name="conversion",
                value=1.0,
            ))

            result = manager.analyze_experiment("checkout_button")

    Attributes:
        config: エンジン設定
        registry: 実験定義の所有者
        metrics: メトリクス観測値のストア
        store: スナップショットの保存先
    """

    def __init__(
        self,
        config: Optional[ABTestingConfig] = None,
        store: Optional[SnapshotStore] = None,
    ):
        """ExperimentManagerを初期化

        保存済みのスナップショットがあれば読み込み、設定に応じて
        自動保存・クリーンアップのスレッドを開始する。

        Args:
            config: エンジン設定。Noneの場合はデフォルト設定を使用。
            store: スナップショットの保存先。Noneの場合は config.db_path の JSON ファイル。

        Raises:
            ValueError: 設定値が不正な場合
            PersistenceError: 保存済みスナップショットの読み込みに失敗した場合
        """
        self.config = config or ABTestingConfig()
        self.config.validate()

        self.registry = ExperimentRegistry()
        self.metrics = MetricsStore(self.registry, self.config.lock_stripes)
        self.assigner = VariantAssigner(self.registry)
        self.analyzer = ExperimentAnalyzer(self.registry, self.metrics, self.config)
        self.store = store or JsonFileSnapshotStore(self.config.db_path)

        # フラッシュ同士の直列化のみ（エンジン状態のロックではない）
        self._flush_lock = threading.Lock()
        self._saved_version: Tuple[int, int] = self._current_version()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._closed = False

        self._load()

        if self.config.auto_save:
            self._start_timer(
                "ab-testing-autosave",
                self.config.autosave_interval_seconds,
                self._autosave_tick,
            )
        if self.config.cleanup_enabled:
            self._start_timer(
                "ab-testing-cleanup",
                self.config.cleanup_interval_seconds,
                self._cleanup_tick,
            )

    # ===== ライフサイクル =====

    def create_experiment(
        self,
        definition: Union[Experiment, Dict[str, Any]],
    ) -> Experiment:
        """実験を作成

        辞書で渡され confidence_level が無い場合は設定値を使う。

        Raises:
            InvalidAllocationError: バリアント配分が不正な場合
            DuplicateExperimentError: 同じIDの実験が既に存在する場合
        """
        if isinstance(definition, dict) and definition.get("confidence_level") is None:
            definition = dict(definition, confidence_level=self.config.confidence_level)
        experiment_id = (
            definition.id if isinstance(definition, Experiment) else definition.get("id")
        )
        if experiment_id is not None:
            self.metrics.discard_orphans(str(experiment_id))
        return self.registry.create_experiment(definition)

    def start_experiment(self, experiment_id: str) -> Experiment:
        return self.registry.start_experiment(experiment_id)

    def complete_experiment(
        self,
        experiment_id: str,
        winning_variant: Optional[str] = None,
        conclusion: str = "",
    ) -> Experiment:
        return self.registry.complete_experiment(experiment_id, winning_variant, conclusion)

    def stop_experiment(self, experiment_id: str, reason: str = "") -> Experiment:
        return self.registry.stop_experiment(experiment_id, reason)

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        return self.registry.get_experiment(experiment_id)

    def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Experiment]:
        return self.registry.list_experiments(status, limit)

    def delete_experiment(self, experiment_id: str) -> bool:
        """実験とそのメトリクスを削除

        Returns:
            削除した場合 True、存在しなかった場合 False
        """
        deleted = self.registry.delete_experiment(experiment_id)
        if deleted:
            self.metrics.remove_experiment(experiment_id)
        return deleted

    def cleanup_stale_experiments(self, now: Optional[datetime] = None) -> List[str]:
        """終了から stale_experiment_days 日以上経過した実験を削除

        Returns:
            削除した実験IDのリスト
        """
        max_age = timedelta(days=self.config.stale_experiment_days)
        stale_ids = self.registry.find_stale_experiments(max_age, now)

        removed = [eid for eid in stale_ids if self.delete_experiment(eid)]
        if removed:
            logger.info("Cleaned up %d stale experiments: %s", len(removed), removed)
        return removed

    # ===== 割り当て・メトリクス =====

    def assign_variant(self, experiment_id: str, subject_id: str) -> Variant:
        return self.assigner.assign_variant(experiment_id, subject_id)

    def record_metric(self, observation: MetricObservation) -> MetricObservation:
        return self.metrics.record_metric(observation)

    def get_metrics(
        self,
        experiment_id: str,
        variant_id: str,
        metric_name: Optional[str] = None,
    ) -> List[MetricObservation]:
        return self.metrics.get_metrics(experiment_id, variant_id, metric_name)

    def get_aggregated_metrics(
        self,
        experiment_id: str,
        variant_id: str,
        metric_name: str,
    ) -> AggregateStatistics:
        return self.metrics.get_aggregated_metrics(experiment_id, variant_id, metric_name)

    def get_variant_statistics(
        self,
        experiment_id: str,
        variant_id: str,
        metric_name: str,
    ) -> VariantStatistics:
        """バリアント統計（実験の信頼水準で信頼区間を計算）"""
        experiment = self.registry.require_experiment(experiment_id)
        return self.metrics.get_variant_statistics(
            experiment_id, variant_id, metric_name, experiment.confidence_level,
        )

    def get_experiment_progress(self, experiment_id: str) -> ExperimentProgress:
        return self.metrics.get_experiment_progress(
            experiment_id, self.config.default_sample_size_required,
        )

    # ===== 分析 =====

    def analyze_experiment(
        self,
        experiment_id: str,
        metric_name: Optional[str] = None,
        variant_id: Optional[str] = None,
    ) -> Optional[AnalysisResult]:
        return self.analyzer.analyze_experiment(experiment_id, metric_name, variant_id)

    def analyze_all_variants(
        self,
        experiment_id: str,
        metric_name: Optional[str] = None,
    ) -> List[AnalysisResult]:
        return self.analyzer.analyze_all_variants(experiment_id, metric_name)

    def calculate_required_sample_size(
        self,
        baseline_rate: float,
        min_detectable_effect: float,
        alpha: Optional[float] = None,
        power: Optional[float] = None,
    ) -> int:
        return self.analyzer.calculate_required_sample_size(
            baseline_rate, min_detectable_effect, alpha, power,
        )

    def generate_report(self, experiment_id: str) -> ExperimentReport:
        return self.analyzer.generate_report(experiment_id)

    # ===== エクスポート・インポート =====

    def export_experiment(self, experiment_id: str) -> str:
        """実験と全観測値を自己完結した JSON 文字列として出力

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        experiment = self.registry.require_experiment(experiment_id)
        payload = {
            "version": EXPORT_VERSION,
            "exported_at": datetime.now().isoformat(),
            "experiment": experiment.to_dict(),
            "metrics": [o.to_dict() for o in self.metrics.get_all_metrics(experiment_id)],
        }
        return json.dumps(payload, ensure_ascii=False, indent=2)

    def import_experiment(self, snapshot: Union[str, Dict[str, Any]]) -> Experiment:
        """export_experiment の出力から実験を復元

        実験定義は作成時と同じ規則で検証し、状態・日時はそのまま引き継ぐ。
        不正な観測値の行は警告を出してスキップする。

        Args:
            snapshot: JSON 文字列または辞書 {experiment, metrics}

        Returns:
            登録された実験

        Raises:
            ValueError: スナップショットの形式が不正な場合
            InvalidAllocationError: バリアント配分が不正な場合
            DuplicateExperimentError: 同じIDの実験が既に存在する場合
        """
        if isinstance(snapshot, str):
            try:
                snapshot = json.loads(snapshot)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid experiment snapshot JSON: {e}") from e

        if not isinstance(snapshot, dict) or not isinstance(snapshot.get("experiment"), dict):
            raise ValueError("Snapshot must be an object with an 'experiment' entry")

        try:
            definition = Experiment.from_dict(snapshot["experiment"])
        except KeyError as e:
            raise ValueError(f"Experiment snapshot is missing required key {e}") from e

        self.metrics.discard_orphans(definition.id)
        experiment = self.registry.create_experiment(definition, keep_lifecycle=True)

        imported = 0
        for index, row in enumerate(snapshot.get("metrics") or []):
            try:
                observation = MetricObservation.from_dict(
                    dict(row, experiment_id=experiment.id)
                )
                self.metrics.record_metric(observation)
                imported += 1
            except (KeyError, TypeError, ValueError, ABTestingError) as e:
                logger.warning(
                    "Skipped metric row %d while importing %s: %s",
                    index, experiment.id, e,
                )

        logger.info(
            "Imported experiment %s with %d observations", experiment.id, imported,
        )
        return experiment

    # ===== テキスト表示 =====

    def render_experiment_list(self, status: Optional[ExperimentStatus] = None) -> str:
        return format_experiment_list(self.list_experiments(status))

    def render_experiment(self, experiment_id: str) -> str:
        """実験の詳細テキスト

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        experiment = self.registry.require_experiment(experiment_id)
        return format_experiment_detail(
            experiment,
            self.get_experiment_progress(experiment_id),
            self.generate_report(experiment_id),
        )

    def render_analysis(
        self,
        experiment_id: str,
        metric_name: Optional[str] = None,
        variant_id: Optional[str] = None,
    ) -> str:
        experiment = self.registry.require_experiment(experiment_id)
        result = self.analyze_experiment(experiment_id, metric_name, variant_id)
        return format_analysis(experiment, result, metric_name)

    # ===== 永続化 =====

    @property
    def is_dirty(self) -> bool:
        """最後の保存以降に変更があるか"""
        return self._current_version() != self._saved_version

    def flush(self, force: bool = False) -> bool:
        """現在の状態をスナップショットとして保存

        Args:
            force: True の場合は変更が無くても保存する

        Returns:
            保存した場合 True、変更が無く保存しなかった場合 False

        Raises:
            PersistenceError: 書き込みに失敗した場合（状態はダーティのまま）
        """
        with self._flush_lock:
            # スナップショットより先にバージョンを読む（取りこぼした変更は次回保存される）
            version = self._current_version()
            if not force and version == self._saved_version:
                return False

            snapshot = build_snapshot(self.registry.snapshot(), self.metrics.snapshot())
            try:
                self.store.save(snapshot)
            except PersistenceError:
                logger.exception("Failed to save A/B testing snapshot")
                raise
            except OSError as e:
                logger.exception("Failed to save A/B testing snapshot")
                raise PersistenceError(f"Failed to save snapshot: {e}") from e

            self._saved_version = version

        logger.info(
            "Saved %d experiments and %d observations",
            len(snapshot["experiments"]), len(snapshot["metrics"]),
        )
        return True

    async def flush_async(self, force: bool = False) -> bool:
        """flush() を別スレッドで実行（非同期ホスト用）"""
        return await asyncio.to_thread(self.flush, force)

    def close(self) -> None:
        """タイマーを停止し、最後のフラッシュを行う

        Raises:
            PersistenceError: 最後の書き込みに失敗した場合
        """
        if self._closed:
            return
        self._closed = True
        self._stop_event.set()
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        self.flush()

    def __enter__(self) -> "ExperimentManager":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ===== Private Methods =====

    def _current_version(self) -> Tuple[int, int]:
        return (self.registry.version, self.metrics.version)

    def _load(self) -> None:
        snapshot = self.store.load()
        if snapshot is None:
            return

        try:
            experiments = self.registry.restore(snapshot.get("experiments") or [])
            observations = self.metrics.restore(snapshot.get("metrics") or [])
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Snapshot contents are invalid: {e}") from e

        self._saved_version = self._current_version()
        logger.info(
            "Restored %d experiments and %d observations", experiments, observations,
        )

    def _start_timer(self, name: str, interval: float, tick) -> None:
        def run():
            while not self._stop_event.wait(interval):
                tick()

        thread = threading.Thread(target=run, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _autosave_tick(self) -> None:
        try:
            self.flush()
        except PersistenceError:
            logger.warning(
                "Autosave failed, retrying in %.1f seconds",
                self.config.autosave_interval_seconds,
            )

    def _cleanup_tick(self) -> None:
        try:
            self.cleanup_stale_experiments()
        except Exception:
            logger.exception(
                "Stale experiment cleanup failed, retrying in %.1f seconds",
                self.config.cleanup_interval_seconds,
            )
