"""
割り当て・メトリクスコマンド実装（assign / record / progress / report）
"""

import sys
from typing import Optional

import click

from src.ab_testing.errors import ABTestingError, ExperimentNotFoundError
from src.ab_testing.models import MetricObservation, MetricType
from src.cli.utils.output import echo_json, echo_table, format_number


def metrics_commands(abtest_group, pass_context):
    """割り当て・メトリクス系コマンドを abtest グループに追加"""

    @abtest_group.command()
    @click.argument('experiment_id')
    @click.argument('subject_id')
    @click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text', help='出力形式')
    @pass_context
    def assign(ctx, experiment_id: str, subject_id: str, output_format: str):
        """被験者に割り当てられるバリアントを表示する"""
        ctx.initialize()

        try:
            variant = ctx.manager.assign_variant(experiment_id, subject_id)
        except ExperimentNotFoundError as e:
            click.echo(f"[エラー] {e}", err=True)
            sys.exit(1)

        if output_format == 'json':
            echo_json({"experiment_id": experiment_id, "subject_id": subject_id, "variant": variant.to_dict()})
            return
        click.echo(variant.id)

    @abtest_group.command()
    @click.argument('experiment_id')
    @click.argument('subject_id')
    @click.argument('metric_name')
    @click.argument('value', type=float)
    @click.option('--variant', 'variant_id', help='バリアントID（省略時は割り当て結果を使用）')
    @click.option('--kind', type=click.Choice([t.value for t in MetricType]), help='メトリクスの種類')
    @pass_context
    def record(ctx, experiment_id: str, subject_id: str, metric_name: str, value: float,
               variant_id: Optional[str], kind: Optional[str]):
        """被験者のメトリクス値を記録する（同じ被験者・メトリクスの値は上書き）"""
        ctx.initialize()

        try:
            if variant_id is None:
                variant_id = ctx.manager.assign_variant(experiment_id, subject_id).id
            ctx.manager.record_metric(MetricObservation(
                experiment_id=experiment_id,
                variant_id=variant_id,
                subject_id=subject_id,
                metric_name=metric_name,
                value=value,
                kind=MetricType(kind) if kind else None,
            ))
            ctx.save()
        except (ExperimentNotFoundError, ValueError) as e:
            click.echo(f"[エラー] {e}", err=True)
            sys.exit(1)

        click.echo(f"✓ {metric_name}={value:g} を記録しました（{variant_id} / {subject_id}）")

    @abtest_group.command()
    @click.argument('experiment_id')
    @click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text', help='出力形式')
    @pass_context
    def progress(ctx, experiment_id: str, output_format: str):
        """実験の進捗（サンプル数）を表示する"""
        ctx.initialize()

        try:
            result = ctx.manager.get_experiment_progress(experiment_id)
        except ExperimentNotFoundError as e:
            click.echo(f"[エラー] {e}", err=True)
            sys.exit(1)

        if output_format == 'json':
            echo_json(result.to_dict())
            return

        click.echo(f"実験: {experiment_id} ({result.status.value})")
        click.echo(
            f"進捗: {result.total_sample_size}/{result.required_sample_size} "
            f"({result.percentage_complete:.1f}%)"
        )
        click.echo(f"経過日数: {result.days_running:.1f}")
        if result.estimated_completion is not None:
            click.echo(f"完了見込み: {result.estimated_completion.isoformat(timespec='seconds')}")
        click.echo("")
        echo_table(["バリアント", "被験者数"], sorted(result.variant_sample_sizes.items()))

    @abtest_group.command()
    @click.argument('experiment_id')
    @click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text', help='出力形式')
    @pass_context
    def report(ctx, experiment_id: str, output_format: str):
        """バリアント別のメトリクスサマリーを表示する"""
        ctx.initialize()

        try:
            result = ctx.manager.generate_report(experiment_id)
        except ABTestingError as e:
            click.echo(f"[エラー] レポートの生成に失敗しました: {e}", err=True)
            sys.exit(1)

        if output_format == 'json':
            echo_json(result.to_dict())
            return

        click.echo(f"レポート: {result.name} ({result.status.value})\n")
        headers = ["バリアント", "配分", "被験者数", "メトリクス", "件数", "平均", "標準偏差", "CVR"]
        rows = []
        for variant in result.variants:
            for metric_name, stats in variant.metrics.items():
                rows.append([
                    variant.id,
                    f"{variant.allocation:g}%",
                    variant.sample_size,
                    metric_name,
                    stats.count,
                    stats.mean if stats.count else None,
                    stats.standard_deviation if stats.count else None,
                    format_number(stats.conversion_rate),
                ])
        echo_table(headers, rows)

        click.echo("")
        click.echo(f"有意差: {'あり' if result.significant else 'なし'}")
        if result.winning_variant:
            click.echo(f"勝者バリアント: {result.winning_variant}")
        if result.conclusion:
            click.echo(f"結論: {result.conclusion}")
