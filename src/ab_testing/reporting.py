# A/Bテスト テキストレンダリング
"""
オペレーター向けのテキスト表示（一覧・詳細・分析結果）

データの取得は行わず、渡されたモデルを整形するだけの純粋関数。
CLI と ExperimentManager.render_* から使う。
"""

from typing import List, Optional

from src.ab_testing.models import (
    AnalysisResult,
    Experiment,
    ExperimentProgress,
    ExperimentReport,
    ExperimentStatus,
)


RULE = "=" * 50

STATUS_ICONS = {
    ExperimentStatus.DRAFT: "📝",
    ExperimentStatus.RUNNING: "🔄",
    ExperimentStatus.COMPLETED: "✅",
    ExperimentStatus.STOPPED: "⏹️",
}


def status_icon(status: ExperimentStatus) -> str:
    return STATUS_ICONS.get(status, "❓")


def format_allocation(allocation: float) -> str:
    """50.0 → "50%"、33.34 → "33.34%" """
    return f"{allocation:g}%"


def format_experiment_list(experiments: List[Experiment]) -> str:
    """実験一覧"""
    if not experiments:
        return "実験はありません。"

    lines = [f"A/Bテスト実験 ({len(experiments)}件)", RULE, ""]
    for experiment in experiments:
        variants = ", ".join(
            f"{v.id} ({format_allocation(v.allocation)})" for v in experiment.variants
        )
        lines.append(f"{status_icon(experiment.status)} {experiment.id}: {experiment.name}")
        lines.append(f"   状態: {experiment.status.value}")
        lines.append(f"   バリアント: {variants}")
        lines.append(f"   作成日時: {experiment.created_at.isoformat(timespec='seconds')}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def format_experiment_detail(
    experiment: Experiment,
    progress: Optional[ExperimentProgress] = None,
    report: Optional[ExperimentReport] = None,
) -> str:
    """実験の詳細（定義・進捗・バリアント別メトリクス）"""
    lines = [
        f"実験: {experiment.name}",
        RULE,
        f"ID: {experiment.id}",
        f"状態: {status_icon(experiment.status)} {experiment.status.value}",
    ]
    if experiment.hypothesis:
        lines.append(f"仮説: {experiment.hypothesis}")
    if experiment.description:
        lines.append(f"説明: {experiment.description}")

    lines.append("")
    lines.append("バリアント:")
    for variant in experiment.variants:
        line = f"  - {variant.id}: {variant.name} ({format_allocation(variant.allocation)})"
        if variant.description:
            line += f" - {variant.description}"
        lines.append(line)

    lines.append("")
    lines.append(f"主要メトリクス: {experiment.primary_metric}")
    if experiment.secondary_metrics:
        lines.append(f"副次メトリクス: {', '.join(experiment.secondary_metrics)}")

    if progress is not None:
        lines.append("")
        lines.append(
            f"進捗: {progress.total_sample_size}/{progress.required_sample_size} "
            f"({progress.percentage_complete:.0f}%)"
        )
        if experiment.started_at is not None:
            lines.append(f"経過日数: {progress.days_running:.1f}")
        if progress.estimated_completion is not None:
            lines.append(
                f"完了見込み: {progress.estimated_completion.isoformat(timespec='seconds')}"
            )

    if report is not None:
        lines.append("")
        lines.append("メトリクス:")
        for variant in report.variants:
            lines.append(f"  {variant.id} ({variant.sample_size} 件):")
            for metric_name, stats in variant.metrics.items():
                if stats.count == 0:
                    lines.append(f"    {metric_name}: N/A")
                    continue
                lines.append(
                    f"    {metric_name}: {stats.mean:.4f} ± {stats.standard_deviation:.4f}"
                )

    if experiment.winning_variant:
        lines.append("")
        lines.append(f"勝者バリアント: {experiment.winning_variant}")
    if experiment.conclusion:
        lines.append(f"結論: {experiment.conclusion}")

    return "\n".join(lines) + "\n"


def format_analysis(
    experiment: Experiment,
    result: Optional[AnalysisResult],
    metric_name: Optional[str] = None,
) -> str:
    """対照群 vs 実験群の分析結果"""
    metric_name = metric_name or experiment.primary_metric
    if result is None:
        return f"{metric_name} の分析結果はありません（観測値が不足しています）。\n"

    uplift = (
        f"{result.relative_uplift * 100:.2f}%" if result.uplift_defined else "N/A（対照群平均が0）"
    )
    interval = result.confidence_interval
    interval_label = "相対" if result.uplift_defined else "絶対差"

    lines = [
        f"統計分析: {experiment.name}",
        RULE,
        f"メトリクス: {result.metric_name}",
        f"検定: {result.test_type}",
        f"信頼水準: {result.confidence_level * 100:g}%",
        "",
        "結果:",
        f"  対照群 ({result.control_variant}): {result.control_mean:.4f}",
        f"  実験群 ({result.treatment_variant}): {result.treatment_mean:.4f}",
        f"  絶対差: {result.absolute_difference:.4f}",
        f"  相対アップリフト: {uplift}",
        f"  検定統計量: {result.statistic:.4f}",
        f"  p値: {result.p_value:.6f}",
        f"  有意: {'はい' if result.significant else 'いいえ'}",
        "",
        "サンプルサイズ:",
        f"  対照群: {result.control_sample_size}",
        f"  実験群: {result.treatment_sample_size}",
        "",
        f"信頼区間（{interval_label}, {result.confidence_level * 100:g}%）:",
        f"  [{interval.lower:.4f}, {interval.upper:.4f}]",
    ]
    if not result.sufficient_power:
        lines.append("")
        lines.append("⚠ サンプル数が必要数に達していません（検出力不足）")
    return "\n".join(lines) + "\n"
