#!/usr/bin/env python3
"""
A/Bテストエンジン - 基本操作サンプル

実験の作成からバリアント割り当て、メトリクス記録、統計分析、完了までの
一連の流れを順番に実行します。

含まれる機能:
    1. 実験の作成と開始
    2. 被験者へのバリアント割り当て
    3. メトリクスの記録（シミュレーション）
    4. バリアント統計
    5. 統計分析（z 検定）
    6. 進捗とレポート
    7. 実験の完了・停止
    8. テキスト表示・エクスポート

実行方法:
    cd /path/to/ab-experimentation-engine
    pip install -e .
    python examples/basic_usage.py

前提条件:
    なし（スナップショットは一時ディレクトリに保存されます）
"""

import logging
import os
import random
import sys
import tempfile

# ============================================
# プロジェクトルートをPythonパスに追加
# ============================================
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from src.ab_testing import ExperimentManager, MetricObservation, MetricType  # noqa: E402
from src.config import ABTestingConfig  # noqa: E402


# サンプル用の実験ID
EXPERIMENT_ID = "demo_button_color"

# シミュレーションの真のコンバージョン率
TRUE_RATES = {"control": 0.20, "treatment": 0.28}

# 乱数シード（実行ごとに同じ結果にする）
SEED = 42


# ============================================
# Example 1: 実験の作成と開始
# ============================================
def run_example_1_create(manager):
    """
    Example 1: 実験の作成

    バリアント配分の合計は 100 である必要があります。
    confidence_level を省略すると設定値が使われます。
    """
    print("\n" + "=" * 60)
    print("Example 1: 実験の作成と開始")
    print("=" * 60)

    experiment = manager.create_experiment({
        "id": EXPERIMENT_ID,
        "name": "Demo Button Color Test",
        "description": "Testing if green button increases conversions",
        "hypothesis": "Green button will increase conversion rate",
        "primary_metric": "conversion",
        "secondary_metrics": ["engagement_time"],
        "sample_size_required": 500,
        "variants": [
            {"id": "control", "name": "Blue Button", "allocation": 50, "config": {"color": "blue"}},
            {"id": "treatment", "name": "Green Button", "allocation": 50, "config": {"color": "green"}},
        ],
    })
    print(f"[OK] 実験を作成しました: {experiment.id}（状態: {experiment.status.value}）")

    experiment = manager.start_experiment(EXPERIMENT_ID)
    print(f"[OK] 実験を開始しました（開始日時: {experiment.started_at.isoformat(timespec='seconds')}）")


# ============================================
# Example 2: バリアント割り当て
# ============================================
def run_example_2_assign(manager, subject_count=1000):
    """
    Example 2: バリアント割り当て

    同じ被験者は何度呼び出しても同じバリアントに割り当てられます。
    """
    print("\n" + "=" * 60)
    print("Example 2: バリアント割り当て")
    print("=" * 60)

    assignments = {"control": [], "treatment": []}
    for i in range(subject_count):
        subject_id = f"user_{i}"
        variant = manager.assign_variant(EXPERIMENT_ID, subject_id)
        assignments[variant.id].append(subject_id)

    for variant_id, subjects in assignments.items():
        print(f"[OK] {variant_id}: {len(subjects)} 人")

    again = manager.assign_variant(EXPERIMENT_ID, "user_0").id
    print(f"[OK] user_0 の再割り当て: {again}（決定論的）")
    return assignments


# ============================================
# Example 3: メトリクス記録
# ============================================
def run_example_3_record(manager, assignments):
    """
    Example 3: メトリクス記録

    コンバージョン（0/1）と滞在時間（連続値）を記録します。
    同じ被験者・メトリクスの値は上書きされます。
    """
    print("\n" + "=" * 60)
    print("Example 3: メトリクス記録（シミュレーション）")
    print("=" * 60)

    rng = random.Random(SEED)
    for variant_id, subjects in assignments.items():
        for subject_id in subjects:
            manager.record_metric(MetricObservation(
                experiment_id=EXPERIMENT_ID,
                variant_id=variant_id,
                subject_id=subject_id,
                metric_name="conversion",
                value=1.0 if rng.random() < TRUE_RATES[variant_id] else 0.0,
                kind=MetricType.BINARY,
            ))
            manager.record_metric(MetricObservation(
                experiment_id=EXPERIMENT_ID,
                variant_id=variant_id,
                subject_id=subject_id,
                metric_name="engagement_time",
                value=max(0.0, rng.gauss(60.0, 15.0)),
            ))

    print("[OK] メトリクスを記録しました")


# ============================================
# Example 4: バリアント統計
# ============================================
def run_example_4_statistics(manager):
    """Example 4: バリアント統計"""
    print("\n" + "=" * 60)
    print("Example 4: バリアント統計")
    print("=" * 60)

    for variant_id in ("control", "treatment"):
        stats = manager.get_variant_statistics(EXPERIMENT_ID, variant_id, "conversion")
        interval = stats.confidence_interval
        print(
            f"[OK] {variant_id}: CVR {stats.conversion_rate * 100:.1f}% "
            f"(n={stats.count}, 95% CI [{interval.lower * 100:.1f}%, {interval.upper * 100:.1f}%])"
        )


# ============================================
# Example 5: 統計分析
# ============================================
def run_example_5_analyze(manager):
    """
    Example 5: 統計分析

    比率指標は z 検定、連続値は Welch の t 検定で比較します。
    """
    print("\n" + "=" * 60)
    print("Example 5: 統計分析")
    print("=" * 60)

    result = manager.analyze_experiment(EXPERIMENT_ID, "conversion")
    print(f"[OK] 絶対差: {result.absolute_difference * 100:.1f}%")
    print(f"[OK] 相対アップリフト: {result.relative_uplift * 100:.1f}%")
    print(f"[OK] p値: {result.p_value:.6f}（{result.test_type}）")
    print(f"[OK] 有意: {'はい' if result.significant else 'いいえ'}")

    engagement = manager.analyze_experiment(EXPERIMENT_ID, "engagement_time")
    print(f"[OK] 滞在時間: p値 {engagement.p_value:.4f}（{engagement.test_type}）")

    per_variant = manager.calculate_required_sample_size(TRUE_RATES["control"], 0.05)
    print(f"[OK] 5ポイント差の検出に必要な1群あたりのサンプル数: {per_variant}")
    return result


# ============================================
# Example 6: 進捗とレポート
# ============================================
def run_example_6_progress(manager):
    """Example 6: 進捗とレポート"""
    print("\n" + "=" * 60)
    print("Example 6: 進捗とレポート")
    print("=" * 60)

    progress = manager.get_experiment_progress(EXPERIMENT_ID)
    print(
        f"[OK] サンプル数: {progress.total_sample_size}/{progress.required_sample_size} "
        f"({progress.percentage_complete:.0f}%)"
    )

    report = manager.generate_report(EXPERIMENT_ID)
    print(f"[OK] レポート: {len(report.variants)} バリアント, 有意差 {'あり' if report.significant else 'なし'}")


# ============================================
# Example 7: 実験の完了・停止
# ============================================
def run_example_7_finish(manager, result):
    """
    Example 7: 実験の完了・停止

    有意なら勝者を指定して完了、そうでなければ停止します。
    """
    print("\n" + "=" * 60)
    print("Example 7: 実験の完了・停止")
    print("=" * 60)

    if result.significant:
        manager.complete_experiment(
            EXPERIMENT_ID,
            winning_variant=result.treatment_variant,
            conclusion=(
                f"Green button showed {result.relative_uplift * 100:.1f}% lift "
                f"(p={result.p_value:.4f})"
            ),
        )
        print("[OK] 実験を完了しました（勝者: treatment）")
    else:
        manager.stop_experiment(EXPERIMENT_ID, "No significant difference detected")
        print("[OK] 実験を停止しました")


# ============================================
# Example 8: テキスト表示・エクスポート
# ============================================
def run_example_8_render(manager):
    """Example 8: テキスト表示・エクスポート"""
    print("\n" + "=" * 60)
    print("Example 8: テキスト表示・エクスポート")
    print("=" * 60)

    print(manager.render_experiment_list())
    print(manager.render_analysis(EXPERIMENT_ID))

    exported = manager.export_experiment(EXPERIMENT_ID)
    print(f"[OK] エクスポート: {len(exported)} 文字の JSON")


# ============================================
# メイン処理
# ============================================
def main():
    """メイン処理: 各Exampleを順番に実行"""
    logging.basicConfig(level=logging.WARNING)

    print("=" * 60)
    print("A/Bテストエンジン - 基本操作サンプル")
    print("=" * 60)

    with tempfile.TemporaryDirectory() as workdir:
        config = ABTestingConfig(db_path=os.path.join(workdir, "ab_testing.json"))

        with ExperimentManager(config) as manager:
            try:
                run_example_1_create(manager)
                assignments = run_example_2_assign(manager)
                run_example_3_record(manager, assignments)
                run_example_4_statistics(manager)
                result = run_example_5_analyze(manager)
                run_example_6_progress(manager)
                run_example_7_finish(manager, result)
                run_example_8_render(manager)
            except KeyboardInterrupt:
                print("\n\n[INFO] 処理を中断しました")
                return

        print(f"\n[OK] スナップショットを保存しました: {config.db_path}")

    print("\n" + "=" * 60)
    print("全Example完了!")
    print("=" * 60)
    print("\n次のステップ:")
    print("  - abtest --help: CLI から同じ操作を行う")


if __name__ == "__main__":
    main()
