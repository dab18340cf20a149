import json

import pytest
from click.testing import CliRunner

from src.ab_testing.experiment_manager import ExperimentManager
from src.ab_testing.models import MetricObservation
from src.cli.main import abtest
from src.config.ab_testing_config import ABTestingConfig


DEFINITION = json.dumps({
    "id": "checkout",
    "name": "Checkout button",
    "primary_metric": "conversion",
    "secondary_metrics": ["revenue"],
    "variants": [
        {"id": "control", "name": "Blue", "allocation": 50},
        {"id": "treatment", "name": "Green", "allocation": 50},
    ],
})

DEFINITION_YAML = """\
id: onboarding
name: Onboarding flow
hypothesis: Shorter flow improves activation
primary_metric: activated
sample_size_required: 200
variants:
  - id: control
    name: Current
    allocation: 70
  - id: short
    name: Short
    allocation: 30
"""


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "ab_testing.json"


def _invoke(db_path, *args, input=None):
    runner = CliRunner()
    return runner.invoke(abtest, ["--db-path", str(db_path), *args], input=input)


def _seed(db_path, control=(100, 1000), treatment=(150, 1000)):
    """CLI を介さずに観測値を投入して保存する"""
    config = ABTestingConfig(db_path=str(db_path), auto_save=False)
    with ExperimentManager(config) as manager:
        manager.create_experiment(json.loads(DEFINITION))
        manager.start_experiment("checkout")
        for variant_id, (conversions, total) in (("control", control), ("treatment", treatment)):
            for i in range(total):
                manager.record_metric(MetricObservation(
                    "checkout", variant_id, f"{variant_id}_{i}", "conversion",
                    1.0 if i < conversions else 0.0,
                ))


def test_create_from_json_string(db_path):
    result = _invoke(db_path, "create", DEFINITION)
    assert result.exit_code == 0, result.output
    assert "✓ 実験 'checkout' を作成しました（状態: draft）" in result.output
    assert db_path.exists()

    listed = _invoke(db_path, "list", "--format", "json")
    data = json.loads(listed.output)
    assert [e["id"] for e in data] == ["checkout"]
    assert data[0]["status"] == "draft"


def test_create_from_yaml_file_and_start(db_path, tmp_path):
    path = tmp_path / "onboarding.yaml"
    path.write_text(DEFINITION_YAML, encoding="utf-8")

    result = _invoke(db_path, "create", "-f", str(path), "--start")
    assert result.exit_code == 0, result.output
    assert "状態: running" in result.output

    shown = _invoke(db_path, "show", "onboarding", "--format", "json")
    data = json.loads(shown.output)
    assert data["experiment"]["status"] == "running"
    assert data["progress"]["required_sample_size"] == 200


def test_create_requires_exactly_one_source(db_path, tmp_path):
    assert _invoke(db_path, "create").exit_code == 2

    path = tmp_path / "x.yaml"
    path.write_text(DEFINITION_YAML, encoding="utf-8")
    assert _invoke(db_path, "create", DEFINITION, "-f", str(path)).exit_code == 2


def test_create_invalid_definition(db_path):
    result = _invoke(db_path, "create", json.dumps({"id": "x", "name": "X"}))
    assert result.exit_code == 2
    assert "必須フィールドが不足しています" in result.output


def test_create_invalid_allocation(db_path):
    definition = json.loads(DEFINITION)
    definition["variants"][0]["allocation"] = 60
    result = _invoke(db_path, "create", json.dumps(definition))
    assert result.exit_code == 1
    assert "バリアント配分が不正です" in result.output


def test_create_duplicate(db_path):
    _invoke(db_path, "create", DEFINITION)
    result = _invoke(db_path, "create", DEFINITION)
    assert result.exit_code == 1
    assert "既に存在します" in result.output


def test_lifecycle_commands(db_path):
    _invoke(db_path, "create", DEFINITION)

    assert _invoke(db_path, "start", "checkout").exit_code == 0

    again = _invoke(db_path, "start", "checkout")
    assert again.exit_code == 1
    assert "実験を開始できません" in again.output

    completed = _invoke(
        db_path, "complete", "checkout", "--winner", "treatment", "--conclusion", "Ship it",
    )
    assert completed.exit_code == 0, completed.output
    assert "勝者バリアント: treatment" in completed.output

    shown = _invoke(db_path, "show", "checkout")
    assert "✅ completed" in shown.output
    assert "結論: Ship it" in shown.output


def test_complete_unknown_winner(db_path):
    _invoke(db_path, "create", DEFINITION, "--start")
    result = _invoke(db_path, "complete", "checkout", "--winner", "purple")
    assert result.exit_code == 1

    listed = json.loads(_invoke(db_path, "list", "--format", "json").output)
    assert listed[0]["status"] == "running"


def test_stop_with_reason(db_path):
    _invoke(db_path, "create", DEFINITION, "--start")
    result = _invoke(db_path, "stop", "checkout", "--reason", "tracking bug")
    assert result.exit_code == 0

    data = json.loads(_invoke(db_path, "show", "checkout", "--format", "json").output)
    assert data["experiment"]["status"] == "stopped"
    assert data["experiment"]["conclusion"] == "tracking bug"


def test_list_filters(db_path, tmp_path):
    _invoke(db_path, "create", DEFINITION)
    path = tmp_path / "onboarding.yaml"
    path.write_text(DEFINITION_YAML, encoding="utf-8")
    _invoke(db_path, "create", "-f", str(path), "--start")

    running = json.loads(_invoke(db_path, "list", "--status", "running", "--format", "json").output)
    assert [e["id"] for e in running] == ["onboarding"]

    table = _invoke(db_path, "list")
    assert "実験 (2件)" in table.output
    assert "control:50%, treatment:50%" in table.output

    text = _invoke(db_path, "list", "--format", "text")
    assert "A/Bテスト実験 (2件)" in text.output


def test_list_empty(db_path):
    result = _invoke(db_path, "list")
    assert result.exit_code == 0
    assert "実験はありません。" in result.output


def test_delete(db_path):
    _invoke(db_path, "create", DEFINITION)

    cancelled = _invoke(db_path, "delete", "checkout", input="n\n")
    assert "削除をキャンセルしました" in cancelled.output

    deleted = _invoke(db_path, "delete", "checkout", "--yes")
    assert deleted.exit_code == 0
    assert "✓ 実験 'checkout' を削除しました" in deleted.output

    assert _invoke(db_path, "delete", "checkout", "--yes").exit_code == 1


def test_show_unknown(db_path):
    result = _invoke(db_path, "show", "missing")
    assert result.exit_code == 1
    assert "見つかりません" in result.output


def test_assign_is_stable(db_path):
    _invoke(db_path, "create", DEFINITION, "--start")

    first = _invoke(db_path, "assign", "checkout", "user_1").output.strip()
    second = _invoke(db_path, "assign", "checkout", "user_1").output.strip()
    assert first in ("control", "treatment")
    assert first == second


def test_record_and_progress(db_path):
    _invoke(db_path, "create", DEFINITION, "--start")

    recorded = _invoke(db_path, "record", "checkout", "user_1", "conversion", "1")
    assert recorded.exit_code == 0, recorded.output
    assert "✓ conversion=1 を記録しました" in recorded.output

    _invoke(db_path, "record", "checkout", "user_2", "revenue", "12.5", "--variant", "control")
    _invoke(db_path, "record", "checkout", "user_2", "revenue", "20", "--variant", "control")

    progress = json.loads(_invoke(db_path, "progress", "checkout", "--format", "json").output)
    assert progress["total_sample_size"] == 2
    assert progress["required_sample_size"] == 1000

    report = json.loads(_invoke(db_path, "report", "checkout", "--format", "json").output)
    control = next(v for v in report["variants"] if v["id"] == "control")
    assert control["metrics"]["revenue"]["count"] == 1
    assert control["metrics"]["revenue"]["mean"] == 20.0


def test_record_unknown_variant(db_path):
    _invoke(db_path, "create", DEFINITION)
    result = _invoke(db_path, "record", "checkout", "u1", "conversion", "1", "--variant", "ghost")
    assert result.exit_code == 1


def test_record_non_finite_value(db_path):
    _invoke(db_path, "create", DEFINITION, "--start")
    result = _invoke(db_path, "record", "checkout", "u1", "revenue", "nan", "--variant", "control")
    assert result.exit_code == 1
    assert "finite" in result.output

    progress = json.loads(_invoke(db_path, "progress", "checkout", "--format", "json").output)
    assert progress["total_sample_size"] == 0


def test_analyze(db_path):
    _seed(db_path)

    text = _invoke(db_path, "analyze", "checkout")
    assert text.exit_code == 0, text.output
    assert "検定: z-test" in text.output
    assert "有意: はい" in text.output

    data = json.loads(_invoke(db_path, "analyze", "checkout", "--format", "json").output)
    assert data["significant"] is True
    assert data["relative_uplift"] == pytest.approx(0.5)

    table = _invoke(db_path, "analyze", "checkout", "--all")
    assert "treatment" in table.output
    assert "50.00%" in table.output


def test_analyze_without_data(db_path):
    _invoke(db_path, "create", DEFINITION)
    result = _invoke(db_path, "analyze", "checkout", "--metric", "revenue")
    assert result.exit_code == 0
    assert "revenue の分析結果はありません" in result.output

    data = _invoke(db_path, "analyze", "checkout", "--format", "json")
    assert json.loads(data.output) is None


def test_analyze_variant_and_all_conflict(db_path):
    result = _invoke(db_path, "analyze", "checkout", "--variant", "treatment", "--all")
    assert result.exit_code == 2


def test_report_text(db_path):
    _seed(db_path)
    result = _invoke(db_path, "report", "checkout")
    assert result.exit_code == 0
    assert "有意差: あり" in result.output
    assert "0.1500" in result.output


def test_export_import(db_path, tmp_path):
    _seed(db_path, control=(1, 3), treatment=(2, 3))
    export_path = tmp_path / "checkout.json"

    exported = _invoke(db_path, "export", "checkout", "-o", str(export_path))
    assert exported.exit_code == 0
    assert export_path.exists()

    other_db = tmp_path / "other.json"
    imported = _invoke(other_db, "import", str(export_path))
    assert imported.exit_code == 0, imported.output
    assert "✓ 実験 'checkout' をインポートしました（観測値 6 件）" in imported.output

    data = json.loads(_invoke(other_db, "show", "checkout", "--format", "json").output)
    assert data["experiment"]["status"] == "running"

    duplicate = _invoke(other_db, "import", str(export_path))
    assert duplicate.exit_code == 1


def test_import_from_stdin(db_path, tmp_path):
    _seed(db_path, control=(1, 2), treatment=(1, 2))
    payload = _invoke(db_path, "export", "checkout").output

    result = _invoke(tmp_path / "stdin.json", "import", "-", input=payload)
    assert result.exit_code == 0, result.output


def test_import_invalid_json(db_path):
    result = _invoke(db_path, "import", "-", input="{broken")
    assert result.exit_code == 1
    assert "インポートに失敗しました" in result.output


def test_sample_size(db_path):
    result = _invoke(
        db_path, "sample-size", "--baseline", "0.1", "--mde", "0.05", "--alpha", "0.05",
        "--format", "json",
    )
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert 680 <= data["per_variant"] <= 690
    assert data["total"] == data["per_variant"] * 2

    text = _invoke(db_path, "sample-size", "--baseline", "0.1", "--mde", "0.05")
    assert "1群あたり:" in text.output


def test_sample_size_invalid(db_path):
    result = _invoke(db_path, "sample-size", "--baseline", "1.5", "--mde", "0.05")
    assert result.exit_code == 2


def test_config_file(tmp_path):
    db_path = tmp_path / "from_config.json"
    config_path = tmp_path / "ab.yaml"
    config_path.write_text(f"ab_testing:\n  db_path: {db_path}\n", encoding="utf-8")

    result = CliRunner().invoke(abtest, ["--config", str(config_path), "create", DEFINITION])
    assert result.exit_code == 0, result.output
    assert db_path.exists()
