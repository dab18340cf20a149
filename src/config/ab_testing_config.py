# A/Bテストエンジン設定

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Union

import yaml


@dataclass
class ABTestingConfig:
    """A/Bテストエンジン設定

    環境変数からの上書きをサポートします。

    環境変数:
        AB_TESTING_DB_PATH: スナップショットファイルのパス
        AB_TESTING_CONFIDENCE_LEVEL: デフォルト信頼水準
        AB_TESTING_AUTO_SAVE: "false" で自動保存を無効化

    使用例:
        config = ABTestingConfig()
        config = ABTestingConfig(db_path="/tmp/ab.json", auto_save=False)
        config = ABTestingConfig.from_yaml("config/ab_testing.yaml")
    """

    # === 永続化 ===
    db_path: str = "data/ab_testing.json"
    """スナップショット（実験 + メトリクス）の保存先"""

    auto_save: bool = True
    """バックグラウンドで定期的にフラッシュするか"""

    autosave_interval_seconds: float = 5.0
    """自動保存の間隔（秒）"""

    # === 統計 ===
    confidence_level: float = 0.95
    """実験に指定が無い場合の信頼水準"""

    power: float = 0.8
    """サンプルサイズ計算のデフォルト検出力"""

    default_sample_size_required: int = 1000
    """sample_size_required 未設定の実験で進捗計算に使う必要サンプル数"""

    # === クリーンアップ ===
    cleanup_enabled: bool = False
    """古い完了済み実験の定期削除を有効にするか"""

    cleanup_interval_seconds: float = 3600.0
    """クリーンアップの間隔（秒）"""

    stale_experiment_days: int = 90
    """完了・停止からこの日数を過ぎた実験を削除対象とする"""

    # === 並行性 ===
    lock_stripes: int = 64
    """メトリクス書き込み用ストライプロックの数"""

    def __post_init__(self) -> None:
        """初期化後の処理: 環境変数から設定を取得"""
        env_path = os.getenv("AB_TESTING_DB_PATH")
        if env_path:
            self.db_path = env_path

        env_confidence = os.getenv("AB_TESTING_CONFIDENCE_LEVEL")
        if env_confidence:
            self.confidence_level = float(env_confidence)

        if os.getenv("AB_TESTING_AUTO_SAVE") == "false":
            self.auto_save = False

    def validate(self) -> None:
        """設定値の検証

        Raises:
            ValueError: 設定値が範囲外の場合
        """
        if not self.db_path:
            raise ValueError("db_path must not be empty")
        if not 0.0 < self.confidence_level < 1.0:
            raise ValueError(
                f"confidence_level must be in (0, 1), got {self.confidence_level}"
            )
        if not 0.0 < self.power < 1.0:
            raise ValueError(f"power must be in (0, 1), got {self.power}")
        if self.autosave_interval_seconds <= 0:
            raise ValueError("autosave_interval_seconds must be positive")
        if self.cleanup_interval_seconds <= 0:
            raise ValueError("cleanup_interval_seconds must be positive")
        if self.stale_experiment_days < 0:
            raise ValueError("stale_experiment_days must be >= 0")
        if self.default_sample_size_required <= 0:
            raise ValueError("default_sample_size_required must be positive")
        if self.lock_stripes <= 0:
            raise ValueError("lock_stripes must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ABTestingConfig":
        """辞書から設定を生成

        Raises:
            ValueError: 未知のキーが含まれる場合
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown ab_testing config keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ABTestingConfig":
        """YAMLファイルから設定を読み込む

        ファイルのルート、または `ab_testing:` セクションの値を使用する。
        環境変数は YAML の値より優先される。
        """
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError("YAML root must be a mapping")
        section = data.get("ab_testing", data)
        if not isinstance(section, dict):
            raise ValueError("ab_testing section must be a mapping")
        return cls.from_dict(section)
