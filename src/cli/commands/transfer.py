"""
エクスポート・インポートコマンド実装
"""

import sys
from typing import Optional

import click

from src.ab_testing.errors import ABTestingError, DuplicateExperimentError, ExperimentNotFoundError


def transfer_commands(abtest_group, pass_context):
    """export / import コマンドを abtest グループに追加"""

    @abtest_group.command(name="export")
    @click.argument('experiment_id')
    @click.option('-o', '--output', 'output_file', type=click.Path(dir_okay=False, writable=True), help='出力ファイル（省略時は標準出力）')
    @pass_context
    def export_experiment(ctx, experiment_id: str, output_file: Optional[str]):
        """実験とメトリクスを JSON としてエクスポートする"""
        ctx.initialize()

        try:
            payload = ctx.manager.export_experiment(experiment_id)
        except ExperimentNotFoundError as e:
            click.echo(f"[エラー] {e}", err=True)
            sys.exit(1)

        if output_file is None:
            click.echo(payload)
            return

        try:
            with open(output_file, "w", encoding="utf-8") as f:
                f.write(payload)
        except OSError as e:
            click.echo(f"[エラー] ファイルの書き込みに失敗しました: {e}", err=True)
            sys.exit(1)
        click.echo(f"✓ 実験 '{experiment_id}' を {output_file} にエクスポートしました")

    @abtest_group.command(name="import")
    @click.argument('source', type=click.File('r', encoding='utf-8'))
    @pass_context
    def import_experiment(ctx, source):
        """エクスポートした JSON から実験を取り込む（'-' で標準入力）"""
        ctx.initialize()

        try:
            experiment = ctx.manager.import_experiment(source.read())
            ctx.save()
        except DuplicateExperimentError as e:
            click.echo(f"[エラー] {e}", err=True)
            sys.exit(1)
        except (ABTestingError, ValueError) as e:
            click.echo(f"[エラー] インポートに失敗しました: {e}", err=True)
            sys.exit(1)

        count = sum(
            len(ctx.manager.get_metrics(experiment.id, v.id)) for v in experiment.variants
        )
        click.echo(f"✓ 実験 '{experiment.id}' をインポートしました（観測値 {count} 件）")
