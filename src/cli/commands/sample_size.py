"""
必要サンプルサイズ計算コマンド実装
"""

import sys
from typing import Optional

import click

from src.cli.utils.output import echo_json


def sample_size_command(abtest_group, pass_context):
    """sample-size コマンドを abtest グループに追加"""

    @abtest_group.command(name="sample-size")
    @click.option('--baseline', 'baseline_rate', type=float, required=True, help='対照群のコンバージョン率（0-1）')
    @click.option('--mde', 'min_detectable_effect', type=float, required=True, help='検出したい絶対差')
    @click.option('--alpha', type=float, default=None, help='有意水準（省略時は 1 - confidence_level）')
    @click.option('--power', type=float, default=None, help='検出力（省略時は設定値）')
    @click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text', help='出力形式')
    @pass_context
    def sample_size(ctx, baseline_rate: float, min_detectable_effect: float,
                    alpha: Optional[float], power: Optional[float], output_format: str):
        """2標本比率検定で必要な1群あたりのサンプルサイズを計算する"""
        ctx.initialize()

        try:
            per_variant = ctx.manager.calculate_required_sample_size(
                baseline_rate, min_detectable_effect, alpha, power,
            )
        except ValueError as e:
            click.echo(f"[エラー] 入力値が不正です: {e}", err=True)
            sys.exit(2)

        if output_format == 'json':
            echo_json({
                "baseline_rate": baseline_rate,
                "min_detectable_effect": min_detectable_effect,
                "per_variant": per_variant,
                "total": per_variant * 2,
            })
            return

        click.echo(f"1群あたり: {per_variant}")
        click.echo(f"合計（2群）: {per_variant * 2}")
