# A/Bテスト 統計分析
"""
ExperimentAnalyzer: メトリクスストアの観測値から仮説検定を行う

設計方針:
- 対照群: ID が "control" のバリアント、無ければ先頭のバリアント
- 比率（0/1）指標は2標本比率の z 検定、それ以外は Welch の t 検定
- 相対アップリフトの信頼区間 = 差の信頼区間 / |対照群平均|
- 検出力不足（サンプル数 < sample_size_required）でも結果は返し、フラグで示す
- 観測値が無いことはエラーではない（None を返す）
"""

import logging
from datetime import datetime
from typing import List, Optional

from src.ab_testing.errors import VariantNotFoundError
from src.ab_testing.metrics_store import MetricsStore, detect_metric_type
from src.ab_testing.models import (
    AnalysisResult,
    ConfidenceInterval,
    Experiment,
    ExperimentReport,
    MetricType,
    VariantReport,
)
from src.ab_testing.registry import ExperimentRegistry
from src.ab_testing.statistics import (
    required_sample_size,
    summarize,
    two_proportion_z_test,
    welch_t_test,
)
from src.config.ab_testing_config import ABTestingConfig


logger = logging.getLogger(__name__)

CONTROL_VARIANT_ID = "control"


def control_variant_id(experiment: Experiment) -> str:
    """対照群のバリアントIDを返す"""
    if experiment.get_variant(CONTROL_VARIANT_ID) is not None:
        return CONTROL_VARIANT_ID
    return experiment.variants[0].id


def treatment_variant_ids(experiment: Experiment) -> List[str]:
    """対照群以外のバリアントID（定義順）"""
    control = control_variant_id(experiment)
    return [v.id for v in experiment.variants if v.id != control]


class ExperimentAnalyzer:
    """実験の統計分析

    使用例:
        analyzer = ExperimentAnalyzer(registry, store, config)
        result = analyzer.analyze_experiment("checkout_button", "conversion")
        if result and result.significant and result.sufficient_power:
            ...
    """

    def __init__(
        self,
        registry: ExperimentRegistry,
        store: MetricsStore,
        config: Optional[ABTestingConfig] = None,
    ):
        self.registry = registry
        self.store = store
        self.config = config or ABTestingConfig()

    def analyze_experiment(
        self,
        experiment_id: str,
        metric_name: Optional[str] = None,
        variant_id: Optional[str] = None,
    ) -> Optional[AnalysisResult]:
        """対照群と実験群を比較

        Args:
            experiment_id: 実験ID
            metric_name: メトリクス名。Noneの場合は主要メトリクス。
            variant_id: 比較するバリアント。Noneの場合は対照群以外の最初のバリアント。

        Returns:
            分析結果。どちらかの群に観測値が無い場合、
            またはバリアントが1つしかない場合は None。

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            VariantNotFoundError: variant_id が実験に無い、または対照群自身の場合
        """
        experiment = self.registry.require_experiment(experiment_id)
        metric_name = metric_name or experiment.primary_metric
        control_id = control_variant_id(experiment)

        if variant_id is None:
            treatments = treatment_variant_ids(experiment)
            if not treatments:
                return None
            variant_id = treatments[0]
        elif experiment.get_variant(variant_id) is None:
            raise VariantNotFoundError(
                f"Variant '{variant_id}' not found in experiment {experiment_id}"
            )
        elif variant_id == control_id:
            raise VariantNotFoundError(
                f"Variant '{variant_id}' is the control of experiment {experiment_id}"
            )

        return self._compare(experiment, metric_name, control_id, variant_id)

    def analyze_all_variants(
        self,
        experiment_id: str,
        metric_name: Optional[str] = None,
    ) -> List[AnalysisResult]:
        """全バリアントを対照群とペアで比較（多群実験用）

        観測値の無いバリアントは結果に含めない。
        """
        experiment = self.registry.require_experiment(experiment_id)
        metric_name = metric_name or experiment.primary_metric
        control_id = control_variant_id(experiment)

        results = []
        for treatment_id in treatment_variant_ids(experiment):
            result = self._compare(experiment, metric_name, control_id, treatment_id)
            if result is not None:
                results.append(result)
        return results

    def calculate_required_sample_size(
        self,
        baseline_rate: float,
        min_detectable_effect: float,
        alpha: Optional[float] = None,
        power: Optional[float] = None,
    ) -> int:
        """1群あたりの必要サンプルサイズ

        alpha / power を省略した場合は設定値（1 - confidence_level, power）を使う。
        """
        if alpha is None:
            alpha = 1.0 - self.config.confidence_level
        if power is None:
            power = self.config.power
        return required_sample_size(baseline_rate, min_detectable_effect, alpha, power)

    def generate_report(
        self,
        experiment_id: str,
        now: Optional[datetime] = None,
    ) -> ExperimentReport:
        """バリアント別のメトリクスサマリーを含むレポートを生成

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        experiment = self.registry.require_experiment(experiment_id)
        analysis = self.analyze_experiment(experiment_id, experiment.primary_metric)
        metric_names = [experiment.primary_metric] + [
            m for m in experiment.secondary_metrics if m != experiment.primary_metric
        ]

        variants = []
        for variant in experiment.variants:
            metrics = {
                name: self.store.get_variant_statistics(
                    experiment_id, variant.id, name, experiment.confidence_level,
                )
                for name in metric_names
            }
            sample_size = len({
                o.subject_id for o in self.store.get_metrics(experiment_id, variant.id)
            })
            variants.append(VariantReport(
                id=variant.id,
                name=variant.name,
                allocation=variant.allocation,
                sample_size=sample_size,
                metrics=metrics,
            ))

        return ExperimentReport(
            experiment_id=experiment.id,
            name=experiment.name,
            status=experiment.status,
            created_at=experiment.created_at,
            started_at=experiment.started_at,
            days_running=experiment.days_running(now),
            variants=variants,
            winning_variant=experiment.winning_variant,
            significant=analysis.significant if analysis is not None else False,
            conclusion=experiment.conclusion,
        )

    # ===== Private Methods =====

    def _compare(
        self,
        experiment: Experiment,
        metric_name: str,
        control_id: str,
        treatment_id: str,
    ) -> Optional[AnalysisResult]:
        control_obs = self.store.get_metrics(experiment.id, control_id, metric_name)
        treatment_obs = self.store.get_metrics(experiment.id, treatment_id, metric_name)
        if not control_obs or not treatment_obs:
            logger.debug(
                "No data to compare %s vs %s on %s in %s",
                control_id, treatment_id, metric_name, experiment.id,
            )
            return None

        control = summarize([o.value for o in control_obs])
        treatment = summarize([o.value for o in treatment_obs])
        confidence_level = experiment.confidence_level

        metric_type = detect_metric_type(control_obs + treatment_obs)
        if metric_type == MetricType.BINARY:
            outcome = two_proportion_z_test(
                control.sum, control.count,
                treatment.sum, treatment.count,
                confidence_level,
            )
        else:
            outcome = welch_t_test(control, treatment, confidence_level)

        difference = treatment.mean - control.mean
        margin = outcome.critical_value * outcome.standard_error
        absolute_interval = ConfidenceInterval(difference - margin, difference + margin)

        uplift_defined = control.mean != 0
        if uplift_defined:
            scale = abs(control.mean)
            relative_uplift = difference / control.mean
            interval = ConfidenceInterval(
                relative_uplift - margin / scale,
                relative_uplift + margin / scale,
            )
        else:
            relative_uplift = 0.0
            interval = absolute_interval

        total = control.count + treatment.count
        required = experiment.sample_size_required
        sufficient_power = required is None or total >= required

        alpha = 1.0 - confidence_level
        result = AnalysisResult(
            experiment_id=experiment.id,
            metric_name=metric_name,
            control_variant=control_id,
            treatment_variant=treatment_id,
            control_mean=control.mean,
            treatment_mean=treatment.mean,
            absolute_difference=difference,
            relative_uplift=relative_uplift,
            uplift_defined=uplift_defined,
            p_value=outcome.p_value,
            statistic=outcome.statistic,
            degrees_of_freedom=outcome.degrees_of_freedom,
            significant=outcome.p_value < alpha,
            confidence_level=confidence_level,
            sufficient_power=sufficient_power,
            test_type=outcome.test_type,
            control_sample_size=control.count,
            treatment_sample_size=treatment.count,
            confidence_interval=interval,
            absolute_confidence_interval=absolute_interval,
        )
        logger.info(
            "Analyzed %s/%s: %s %s vs %s, uplift=%.4f, p=%.6f, significant=%s",
            experiment.id, metric_name, result.test_type, control_id, treatment_id,
            relative_uplift, result.p_value, result.significant,
        )
        return result
