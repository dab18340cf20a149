"""
実験ライフサイクルコマンド実装（create / start / complete / stop / delete）
"""

import sys
from typing import Optional

import click

from src.ab_testing.errors import (
    ABTestingError,
    DuplicateExperimentError,
    ExperimentNotFoundError,
    InvalidAllocationError,
    InvalidTransitionError,
)
from src.cli.utils.output import echo_json
from src.cli.utils.yaml_loader import (
    YamlValidationError,
    load_yaml,
    parse_definition,
    validate_experiment_definition,
)


def lifecycle_commands(abtest_group, pass_context):
    """ライフサイクル系コマンドを abtest グループに追加"""

    @abtest_group.command()
    @click.argument('definition', required=False)
    @click.option('-f', '--file', 'file_path', type=click.Path(exists=True, dir_okay=False), help='実験定義YAML/JSONファイル')
    @click.option('--start', 'start_now', is_flag=True, help='作成後すぐに開始')
    @click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text', help='出力形式')
    @pass_context
    def create(ctx, definition: Optional[str], file_path: Optional[str], start_now: bool, output_format: str):
        """実験を作成する（JSON/YAML文字列またはファイル）"""
        if definition and file_path:
            click.echo("[エラー] 定義文字列と --file は同時に指定できません", err=True)
            sys.exit(2)
        if not definition and not file_path:
            click.echo("[エラー] 定義文字列または --file を指定してください", err=True)
            sys.exit(2)

        try:
            data = load_yaml(file_path) if file_path else parse_definition(definition)
            validate_experiment_definition(data)
        except YamlValidationError as e:
            click.echo(f"[エラー] 実験定義の検証に失敗しました: {e}", err=True)
            sys.exit(2)

        ctx.initialize()

        try:
            experiment = ctx.manager.create_experiment(data)
            if start_now:
                experiment = ctx.manager.start_experiment(experiment.id)
            ctx.save()
        except InvalidAllocationError as e:
            click.echo(f"[エラー] バリアント配分が不正です: {e}", err=True)
            sys.exit(1)
        except DuplicateExperimentError:
            click.echo(f"[エラー] 実験 '{data['id']}' は既に存在します", err=True)
            sys.exit(1)
        except (ABTestingError, ValueError) as e:
            click.echo(f"[エラー] 実験の作成に失敗しました: {e}", err=True)
            sys.exit(1)

        if output_format == 'json':
            echo_json(experiment.to_dict())
            return
        click.echo(f"✓ 実験 '{experiment.id}' を作成しました（状態: {experiment.status.value}）")

    @abtest_group.command()
    @click.argument('experiment_id')
    @pass_context
    def start(ctx, experiment_id: str):
        """実験を開始する（draft → running）"""
        ctx.initialize()
        _run_transition(ctx, experiment_id, "開始", lambda: ctx.manager.start_experiment(experiment_id))
        click.echo(f"✓ 実験 '{experiment_id}' を開始しました")

    @abtest_group.command()
    @click.argument('experiment_id')
    @click.option('--winner', 'winning_variant', help='勝者バリアントID')
    @click.option('--conclusion', default='', help='結論')
    @pass_context
    def complete(ctx, experiment_id: str, winning_variant: Optional[str], conclusion: str):
        """実験を完了する（running → completed）"""
        ctx.initialize()
        _run_transition(
            ctx, experiment_id, "完了",
            lambda: ctx.manager.complete_experiment(experiment_id, winning_variant, conclusion),
        )
        click.echo(f"✓ 実験 '{experiment_id}' を完了しました")
        if winning_variant:
            click.echo(f"  勝者バリアント: {winning_variant}")

    @abtest_group.command()
    @click.argument('experiment_id')
    @click.option('--reason', default='', help='停止理由')
    @pass_context
    def stop(ctx, experiment_id: str, reason: str):
        """実験を停止する（勝者なしで終了）"""
        ctx.initialize()
        _run_transition(
            ctx, experiment_id, "停止",
            lambda: ctx.manager.stop_experiment(experiment_id, reason),
        )
        click.echo(f"✓ 実験 '{experiment_id}' を停止しました")

    @abtest_group.command()
    @click.argument('experiment_id')
    @click.option('--yes', is_flag=True, help='確認なしで削除')
    @pass_context
    def delete(ctx, experiment_id: str, yes: bool):
        """実験とメトリクスを削除する"""
        ctx.initialize()

        if ctx.manager.get_experiment(experiment_id) is None:
            click.echo(f"[エラー] 実験 '{experiment_id}' が見つかりません", err=True)
            sys.exit(1)

        if not yes and not click.confirm(f"実験 '{experiment_id}' とメトリクスを削除します。続行しますか？"):
            click.echo("削除をキャンセルしました")
            return

        ctx.manager.delete_experiment(experiment_id)
        ctx.save()
        click.echo(f"✓ 実験 '{experiment_id}' を削除しました")


def _run_transition(ctx, experiment_id: str, label: str, action) -> None:
    """状態遷移を実行して保存（失敗時はエラー終了）"""
    try:
        action()
        ctx.save()
    except ExperimentNotFoundError as e:
        click.echo(f"[エラー] {e}", err=True)
        sys.exit(1)
    except InvalidTransitionError as e:
        click.echo(f"[エラー] 実験を{label}できません: {e}", err=True)
        sys.exit(1)
