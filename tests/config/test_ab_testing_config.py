# ABTestingConfig テスト
"""
ABTestingConfigの単体テスト

検証観点:
- デフォルト値
- 環境変数による上書き
- validate() の範囲チェック
- YAML 読み込み（ルート / ab_testing セクション）
"""

import pytest

from src.config.ab_testing_config import ABTestingConfig


class TestDefaults:
    def test_default_values(self):
        config = ABTestingConfig()
        assert config.db_path == "data/ab_testing.json"
        assert config.auto_save is True
        assert config.confidence_level == 0.95
        assert config.power == 0.8
        assert config.default_sample_size_required == 1000
        assert config.cleanup_enabled is False
        assert config.stale_experiment_days == 90
        config.validate()


class TestEnvironmentOverrides:
    """環境変数による上書きのテスト"""

    def test_db_path(self, monkeypatch):
        monkeypatch.setenv("AB_TESTING_DB_PATH", "/tmp/override.json")
        assert ABTestingConfig(db_path="ignored.json").db_path == "/tmp/override.json"

    def test_confidence_level(self, monkeypatch):
        monkeypatch.setenv("AB_TESTING_CONFIDENCE_LEVEL", "0.99")
        assert ABTestingConfig().confidence_level == 0.99

    def test_auto_save_disabled(self, monkeypatch):
        monkeypatch.setenv("AB_TESTING_AUTO_SAVE", "false")
        assert ABTestingConfig().auto_save is False

    def test_auto_save_other_value_ignored(self, monkeypatch):
        monkeypatch.setenv("AB_TESTING_AUTO_SAVE", "no")
        assert ABTestingConfig().auto_save is True


class TestValidate:
    """validate メソッドのテスト"""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"db_path": ""},
            {"confidence_level": 1.0},
            {"confidence_level": 0.0},
            {"power": 1.5},
            {"autosave_interval_seconds": 0},
            {"cleanup_interval_seconds": -1},
            {"stale_experiment_days": -1},
            {"default_sample_size_required": 0},
            {"lock_stripes": 0},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ValueError):
            ABTestingConfig(**overrides).validate()

    def test_zero_stale_days_allowed(self):
        ABTestingConfig(stale_experiment_days=0).validate()


class TestFromYaml:
    """from_yaml / from_dict のテスト"""

    def test_root_mapping(self, tmp_path):
        path = tmp_path / "ab.yaml"
        path.write_text("db_path: custom.json\nconfidence_level: 0.9\n", encoding="utf-8")

        config = ABTestingConfig.from_yaml(path)
        assert config.db_path == "custom.json"
        assert config.confidence_level == 0.9

    def test_ab_testing_section(self, tmp_path):
        path = tmp_path / "app.yaml"
        path.write_text(
            "ab_testing:\n  auto_save: false\n  lock_stripes: 16\n",
            encoding="utf-8",
        )

        config = ABTestingConfig.from_yaml(path)
        assert config.auto_save is False
        assert config.lock_stripes == 16

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert ABTestingConfig.from_yaml(path).db_path == "data/ab_testing.json"

    def test_env_wins_over_yaml(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AB_TESTING_DB_PATH", "env.json")
        path = tmp_path / "ab.yaml"
        path.write_text("db_path: yaml.json\n", encoding="utf-8")
        assert ABTestingConfig.from_yaml(path).db_path == "env.json"

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValueError, match="unknown_key"):
            ABTestingConfig.from_dict({"unknown_key": 1})

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError):
            ABTestingConfig.from_yaml(path)
