#!/usr/bin/env python3
"""
A/Bテスト CLI メインエントリーポイント

実験の作成・割り当て・メトリクス記録・分析を Pythonコードを書かずに行うための CLI インターフェース。
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

import click

# プロジェクトルートをパスに追加
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../..'))

from src.ab_testing.errors import ABTestingError, ExperimentNotFoundError, PersistenceError
from src.ab_testing.experiment_manager import ExperimentManager
from src.ab_testing.models import ExperimentStatus
from src.config.ab_testing_config import ABTestingConfig
from src.cli.utils.output import echo_json, echo_table

# コマンドモジュールインポート
from src.cli.commands.lifecycle import lifecycle_commands
from src.cli.commands.metrics import metrics_commands
from src.cli.commands.transfer import transfer_commands
from src.cli.commands.sample_size import sample_size_command


class CLIContext:
    """CLI共通コンテキスト（依存関係を保持）"""

    def __init__(self):
        self.db_path: Optional[str] = None
        self.config_path: Optional[str] = None
        self.config: Optional[ABTestingConfig] = None
        self.manager: Optional[ExperimentManager] = None
        self._initialized = False

    def initialize(self):
        """遅延初期化（必要時に呼び出される）"""
        if self._initialized:
            return

        try:
            if self.config_path:
                self.config = ABTestingConfig.from_yaml(self.config_path)
            else:
                self.config = ABTestingConfig()
            if self.db_path:
                self.config.db_path = self.db_path

            # CLI は1コマンド1プロセスなのでタイマーは使わず、変更時に明示的に保存する
            self.config.auto_save = False
            self.config.cleanup_enabled = False

            self.manager = ExperimentManager(self.config)
            self._initialized = True

        except (ABTestingError, OSError, ValueError) as e:
            click.echo(f"[初期化エラー] システムの初期化に失敗しました: {e}", err=True)
            sys.exit(1)

    def save(self):
        """変更を保存（失敗時はエラー終了）"""
        try:
            self.manager.flush()
        except PersistenceError as e:
            click.echo(f"[エラー] 保存に失敗しました: {e}", err=True)
            sys.exit(1)


# click の pass_context でCLIContextを共有
pass_context = click.make_pass_decorator(CLIContext, ensure=True)


@click.group()
@click.version_option(version="1.0.0", prog_name="abtest")
@click.option('--db-path', type=click.Path(dir_okay=False), help='スナップショットファイルのパス')
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False), help='設定YAMLファイル')
@click.option('--verbose', is_flag=True, help='詳細ログを出力')
@pass_context
def abtest(ctx: CLIContext, db_path: Optional[str], config_path: Optional[str], verbose: bool):
    """
    A/Bテスト実験エンジン CLI

    実験の作成・開始・完了、バリアント割り当て、メトリクス記録、統計分析をターミナルから行えます。
    """
    ctx.db_path = db_path
    ctx.config_path = config_path
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@abtest.command(name="list")
@click.option('--format', 'output_format', type=click.Choice(['table', 'text', 'json']), default='table', help='出力形式')
@click.option('--status', type=click.Choice([s.value for s in ExperimentStatus] + ['all']), default='all', help='ステータスでフィルタ')
@click.option('--limit', type=int, default=None, help='表示件数の上限')
@pass_context
def list_experiments(ctx: CLIContext, output_format: str, status: str, limit: Optional[int]):
    """実験の一覧を表示する"""
    ctx.initialize()

    try:
        status_filter = None if status == 'all' else ExperimentStatus(status)
        experiments = ctx.manager.list_experiments(status_filter, limit)

        if output_format == 'json':
            echo_json([e.to_dict() for e in experiments])
            return

        if output_format == 'text':
            click.echo(ctx.manager.render_experiment_list(status_filter), nl=False)
            return

        if not experiments:
            click.echo("実験はありません。")
            click.echo("\nヒント: abtest create -f <experiment.yaml> で実験を作成してください")
            return

        click.echo(f"実験 ({len(experiments)}件):\n")
        headers = ["ID", "名前", "状態", "バリアント", "作成日時"]
        rows = []
        for experiment in experiments:
            rows.append([
                experiment.id,
                experiment.name[:28],
                experiment.status.value,
                ", ".join(f"{v.id}:{v.allocation:g}%" for v in experiment.variants),
                experiment.created_at,
            ])
        echo_table(headers, rows)

    except ABTestingError as e:
        click.echo(f"[エラー] 実験一覧の取得に失敗しました: {e}", err=True)
        sys.exit(1)


@abtest.command()
@click.argument('experiment_id')
@click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text', help='出力形式')
@pass_context
def show(ctx: CLIContext, experiment_id: str, output_format: str):
    """実験の詳細（定義・進捗・メトリクス）を表示する"""
    ctx.initialize()

    try:
        if output_format == 'json':
            experiment = ctx.manager.registry.require_experiment(experiment_id)
            echo_json({
                "experiment": experiment.to_dict(),
                "progress": ctx.manager.get_experiment_progress(experiment_id).to_dict(),
                "report": ctx.manager.generate_report(experiment_id).to_dict(),
            })
            return

        click.echo(ctx.manager.render_experiment(experiment_id), nl=False)

    except ExperimentNotFoundError:
        click.echo(f"[エラー] 実験 '{experiment_id}' が見つかりません", err=True)
        click.echo("\nヒント: abtest list で実験を確認してください", err=True)
        sys.exit(1)
    except ABTestingError as e:
        click.echo(f"[エラー] 実験の取得に失敗しました: {e}", err=True)
        sys.exit(1)


@abtest.command()
@click.argument('experiment_id')
@click.option('--metric', 'metric_name', help='分析するメトリクス（省略時は主要メトリクス）')
@click.option('--variant', 'variant_id', help='対照群と比較するバリアント')
@click.option('--all', 'all_variants', is_flag=True, help='全バリアントを対照群と比較')
@click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text', help='出力形式')
@pass_context
def analyze(ctx: CLIContext, experiment_id: str, metric_name: Optional[str],
            variant_id: Optional[str], all_variants: bool, output_format: str):
    """対照群と実験群の統計分析を表示する"""
    if variant_id and all_variants:
        click.echo("[エラー] --variant と --all は同時に指定できません", err=True)
        sys.exit(2)

    ctx.initialize()

    try:
        if all_variants:
            results = ctx.manager.analyze_all_variants(experiment_id, metric_name)
            if output_format == 'json':
                echo_json([r.to_dict() for r in results])
                return
            if not results:
                click.echo("分析結果はありません（観測値が不足しています）。")
                return
            experiment = ctx.manager.get_experiment(experiment_id)
            headers = ["バリアント", "対照群平均", "平均", "アップリフト", "p値", "有意", "検出力"]
            rows = []
            for r in results:
                rows.append([
                    r.treatment_variant,
                    r.control_mean,
                    r.treatment_mean,
                    f"{r.relative_uplift * 100:.2f}%" if r.uplift_defined else "N/A",
                    f"{r.p_value:.6f}",
                    "はい" if r.significant else "いいえ",
                    "十分" if r.sufficient_power else "不足",
                ])
            click.echo(f"統計分析: {experiment.name} ({results[0].metric_name})\n")
            echo_table(headers, rows)
            return

        if output_format == 'json':
            result = ctx.manager.analyze_experiment(experiment_id, metric_name, variant_id)
            echo_json(result.to_dict() if result is not None else None)
            return

        click.echo(ctx.manager.render_analysis(experiment_id, metric_name, variant_id), nl=False)

    except ExperimentNotFoundError as e:
        click.echo(f"[エラー] {e}", err=True)
        sys.exit(1)
    except ABTestingError as e:
        click.echo(f"[エラー] 分析に失敗しました: {e}", err=True)
        sys.exit(1)


# 各コマンドを追加
lifecycle_commands(abtest, pass_context)
metrics_commands(abtest, pass_context)
transfer_commands(abtest, pass_context)
sample_size_command(abtest, pass_context)


if __name__ == '__main__':
    abtest()
