# A/Bテスト実験レジストリ
"""
ExperimentRegistry: 実験定義とライフサイクルを管理するクラス

設計方針:
- 実験ライフサイクル: draft → running → {completed, stopped}（一方向のみ）
- 作成時にバリアント配分の合計が100であることを検証し、自動補正はしない
- スレッドセーフ: 1つのロックで保護し、クリティカルセクションは辞書操作のみ
- 呼び出し側には常にコピーを返す（内部状態はレジストリ経由でのみ変更）
"""

import copy
import itertools
import logging
from datetime import datetime, timedelta
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional, Union

from src.ab_testing.errors import (
    DuplicateExperimentError,
    ExperimentNotFoundError,
    InvalidAllocationError,
    InvalidTransitionError,
    VariantNotFoundError,
)
from src.ab_testing.models import Experiment, ExperimentStatus, Variant


logger = logging.getLogger(__name__)

# 浮動小数点入力の許容誤差
ALLOCATION_TOLERANCE = 0.01

# 許可される遷移（遷移元 → 遷移先の集合）
ALLOWED_TRANSITIONS: Dict[ExperimentStatus, set] = {
    ExperimentStatus.DRAFT: {ExperimentStatus.RUNNING, ExperimentStatus.STOPPED},
    ExperimentStatus.RUNNING: {ExperimentStatus.COMPLETED, ExperimentStatus.STOPPED},
    ExperimentStatus.COMPLETED: set(),
    ExperimentStatus.STOPPED: set(),
}


def validate_variants(variants: List[Variant]) -> None:
    """バリアント定義を検証

    Raises:
        InvalidAllocationError: バリアントが空、配分が範囲外、合計が100でない、
            またはIDが重複している場合
    """
    if not variants:
        raise InvalidAllocationError("Experiment must have at least one variant")

    ids = [v.id for v in variants]
    if len(ids) != len(set(ids)):
        raise InvalidAllocationError(f"Variant ids must be unique, got {ids}")

    for variant in variants:
        if not 0.0 <= variant.allocation <= 100.0:
            raise InvalidAllocationError(
                f"Variant '{variant.id}' allocation must be within 0-100, "
                f"got {variant.allocation}"
            )

    total = sum(v.allocation for v in variants)
    if abs(total - 100.0) > ALLOCATION_TOLERANCE:
        raise InvalidAllocationError(
            f"Variant allocations must sum to 100, got {total}"
        )


class ExperimentRegistry:
    """実験定義の所有者

    使用例:
        registry = ExperimentRegistry()
        registry.create_experiment(experiment)
        registry.start_experiment("checkout_button")
        registry.complete_experiment("checkout_button", "treatment", "CVR +12%")
    """

    def __init__(self):
        self._experiments: Dict[str, Experiment] = {}
        self._lock = RLock()
        self._mutations = itertools.count(1)
        self._version = 0

    @property
    def version(self) -> int:
        """変更カウンタ（永続化のダーティ判定用）"""
        return self._version

    def _touch(self) -> None:
        self._version = next(self._mutations)

    # ===== 作成・参照 =====

    def create_experiment(
        self,
        definition: Union[Experiment, Dict[str, Any]],
        keep_lifecycle: bool = False,
    ) -> Experiment:
        """実験を作成

        Args:
            definition: 実験定義（Experiment または辞書）
            keep_lifecycle: True の場合は状態・日時をそのまま登録する（インポート用）

        Returns:
            登録された実験のコピー

        Raises:
            InvalidAllocationError: バリアント配分が不正な場合
            DuplicateExperimentError: 同じIDの実験が既に存在する場合
            InvalidTransitionError: 初期状態が draft / running 以外の場合
            ValueError: 信頼水準が (0, 1) の範囲外の場合
        """
        experiment = (
            Experiment.from_dict(definition)
            if isinstance(definition, dict)
            else definition.copy()
        )
        validate_variants(experiment.variants)

        if not 0.0 < experiment.confidence_level < 1.0:
            raise ValueError(
                f"confidence_level must be in (0, 1), got {experiment.confidence_level}"
            )

        initial_states = (ExperimentStatus.DRAFT, ExperimentStatus.RUNNING)
        if not keep_lifecycle and experiment.status not in initial_states:
            raise InvalidTransitionError(
                f"New experiments must start in 'draft' or 'running', "
                f"got '{experiment.status.value}'"
            )
        if experiment.status == ExperimentStatus.RUNNING and experiment.started_at is None:
            experiment.started_at = datetime.now()

        with self._lock:
            if experiment.id in self._experiments:
                raise DuplicateExperimentError(
                    f"Experiment {experiment.id} already exists"
                )
            self._experiments[experiment.id] = experiment
            self._touch()

        logger.info(
            "Created experiment %s (%s) with variants %s",
            experiment.id, experiment.status.value, experiment.variant_ids,
        )
        return experiment.copy()

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        """実験を取得（存在しない場合は None）"""
        with self._lock:
            experiment = self._experiments.get(experiment_id)
            return experiment.copy() if experiment is not None else None

    def require_experiment(self, experiment_id: str) -> Experiment:
        """実験を取得（存在しない場合は例外）

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        experiment = self.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(f"Experiment {experiment_id} not found")
        return experiment

    def require_variant(self, experiment_id: str, variant_id: str) -> Variant:
        """バリアントの存在を検証して取得

        メトリクス記録のホットパスから呼ばれるため、実験全体はコピーしない。

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            VariantNotFoundError: バリアントが見つからない場合
        """
        with self._lock:
            experiment = self._experiments.get(experiment_id)
            if experiment is None:
                raise ExperimentNotFoundError(f"Experiment {experiment_id} not found")
            variant = experiment.get_variant(variant_id)
            if variant is None:
                raise VariantNotFoundError(
                    f"Variant '{variant_id}' not found in experiment {experiment_id}. "
                    f"Valid variants: {experiment.variant_ids}"
                )
            return variant

    def get_variants(self, experiment_id: str) -> List[Variant]:
        """実験のバリアント一覧を取得（割り当て用。実験全体はコピーしない）

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        with self._lock:
            experiment = self._get_locked(experiment_id)
            return [copy.deepcopy(v) for v in experiment.variants]

    def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Experiment]:
        """実験一覧を取得（作成日時の新しい順）

        Args:
            status: フィルタするステータス。Noneの場合は全て取得。
            limit: 取得件数の上限
        """
        if status is not None:
            status = ExperimentStatus(status)

        with self._lock:
            experiments = [
                e.copy() for e in self._experiments.values()
                if status is None or e.status == status
            ]

        experiments.sort(key=lambda e: e.created_at, reverse=True)
        if limit is not None:
            experiments = experiments[:limit]
        return experiments

    def __len__(self) -> int:
        with self._lock:
            return len(self._experiments)

    def __contains__(self, experiment_id: str) -> bool:
        with self._lock:
            return experiment_id in self._experiments

    # ===== ライフサイクル =====

    def start_experiment(self, experiment_id: str) -> Experiment:
        """実験を開始（draft → running）

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            InvalidTransitionError: 実験が draft 状態でない場合
        """
        with self._lock:
            experiment = self._get_locked(experiment_id)
            self._check_transition(experiment, ExperimentStatus.RUNNING)
            experiment.status = ExperimentStatus.RUNNING
            experiment.started_at = datetime.now()
            self._touch()
            result = experiment.copy()

        logger.info("Started experiment %s", experiment_id)
        return result

    def complete_experiment(
        self,
        experiment_id: str,
        winning_variant: Optional[str] = None,
        conclusion: str = "",
    ) -> Experiment:
        """実験を完了（running → completed）

        勝者バリアントは明示的に指定された場合のみ記録する。

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            VariantNotFoundError: 指定された勝者が実験のバリアントでない場合
            InvalidTransitionError: 実験が running 状態でない場合
        """
        with self._lock:
            experiment = self._get_locked(experiment_id)
            if winning_variant is not None and experiment.get_variant(winning_variant) is None:
                raise VariantNotFoundError(
                    f"Invalid winning_variant '{winning_variant}'. "
                    f"Valid variants: {experiment.variant_ids}"
                )
            self._check_transition(experiment, ExperimentStatus.COMPLETED)
            experiment.status = ExperimentStatus.COMPLETED
            experiment.completed_at = datetime.now()
            experiment.winning_variant = winning_variant
            experiment.conclusion = conclusion
            self._touch()
            result = experiment.copy()

        logger.info(
            "Completed experiment %s (winner=%s)", experiment_id, winning_variant,
        )
        return result

    def stop_experiment(self, experiment_id: str, reason: str = "") -> Experiment:
        """実験を停止（結論が出ない・中止した実験用）

        勝者は記録しない。停止理由は conclusion に保存する。

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            InvalidTransitionError: 実験が既に終了している場合
        """
        with self._lock:
            experiment = self._get_locked(experiment_id)
            self._check_transition(experiment, ExperimentStatus.STOPPED)
            experiment.status = ExperimentStatus.STOPPED
            experiment.completed_at = datetime.now()
            experiment.winning_variant = None
            experiment.conclusion = reason
            self._touch()
            result = experiment.copy()

        logger.info("Stopped experiment %s: %s", experiment_id, reason)
        return result

    def delete_experiment(self, experiment_id: str) -> bool:
        """実験を削除（呼び出し側主導のクリーンアップ用）

        Returns:
            削除した場合 True、存在しなかった場合 False
        """
        with self._lock:
            deleted = self._experiments.pop(experiment_id, None) is not None
            if deleted:
                self._touch()

        if deleted:
            logger.info("Deleted experiment %s", experiment_id)
        return deleted

    def find_stale_experiments(
        self,
        max_age: timedelta,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """終了から max_age 以上経過した実験IDを返す"""
        now = now or datetime.now()
        with self._lock:
            return [
                e.id for e in self._experiments.values()
                if e.status.is_finished
                and e.completed_at is not None
                and now - e.completed_at >= max_age
            ]

    # ===== スナップショット =====

    def snapshot(self) -> List[Dict[str, Any]]:
        """全実験の辞書表現を返す（ロックは辞書化の間だけ保持）"""
        with self._lock:
            return [e.to_dict() for e in self._experiments.values()]

    def restore(self, experiments: Iterable[Dict[str, Any]]) -> int:
        """スナップショットから実験を復元（既存の内容は置き換える）

        保存済みの状態は検証済みとみなし、ライフサイクル状態もそのまま復元する。

        Returns:
            復元した実験数
        """
        restored: Dict[str, Experiment] = {}
        for data in experiments:
            experiment = Experiment.from_dict(data)
            restored[experiment.id] = experiment

        with self._lock:
            self._experiments = restored
        return len(restored)

    # ===== Private Methods =====

    def _get_locked(self, experiment_id: str) -> Experiment:
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(f"Experiment {experiment_id} not found")
        return experiment

    def _check_transition(
        self,
        experiment: Experiment,
        target: ExperimentStatus,
    ) -> None:
        if target not in ALLOWED_TRANSITIONS[experiment.status]:
            raise InvalidTransitionError(
                f"Cannot move experiment {experiment.id} from "
                f"'{experiment.status.value}' to '{target.value}'"
            )
