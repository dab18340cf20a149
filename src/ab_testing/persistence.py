# A/Bテスト 永続化
"""
スナップショットの保存・読み込み

エンジンの状態（実験定義 + 現在の観測値）を1つのスナップショットとして扱う。
保存形式:
    {
        "version": "1.0",
        "saved_at": "2026-01-01T00:00:00",
        "experiments": [...],   # Experiment.to_dict()
        "metrics": [...]        # MetricObservation.to_dict()
    }

SnapshotStore は load / save の契約のみを定める。
既定の実装は JSON ファイル（一時ファイルに書いてから os.replace で置き換える）。
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from src.ab_testing.errors import PersistenceError


logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "1.0"


def build_snapshot(
    experiments: List[Dict[str, Any]],
    metrics: List[Dict[str, Any]],
) -> Dict[str, Any]:
    """スナップショット辞書を組み立てる"""
    return {
        "version": SNAPSHOT_VERSION,
        "saved_at": datetime.now().isoformat(),
        "experiments": experiments,
        "metrics": metrics,
    }


class SnapshotStore(ABC):
    """スナップショットの保存先"""

    @abstractmethod
    def load(self) -> Optional[Dict[str, Any]]:
        """保存済みスナップショットを読み込む（未保存の場合は None）

        Raises:
            PersistenceError: 読み込みに失敗した場合
        """

    @abstractmethod
    def save(self, snapshot: Dict[str, Any]) -> None:
        """スナップショットを保存する

        Raises:
            PersistenceError: 書き込みに失敗した場合
        """


class JsonFileSnapshotStore(SnapshotStore):
    """JSON ファイルへの保存

    書き込みは同じディレクトリの一時ファイル経由で行い、途中で失敗しても
    既存のファイルは壊れない。
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            logger.info("No snapshot at %s, starting empty", self.path)
            return None

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to load snapshot {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceError(
                f"Snapshot {self.path} must be a JSON object, got {type(data).__name__}"
            )
        logger.info(
            "Loaded snapshot %s (%d experiments, %d observations)",
            self.path, len(data.get("experiments") or []), len(data.get("metrics") or []),
        )
        return data

    def save(self, snapshot: Dict[str, Any]) -> None:
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent,
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, ensure_ascii=False, indent=2, default=str)
            os.replace(tmp_path, self.path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to save snapshot {self.path}: {e}") from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)

        logger.debug("Saved snapshot to %s", self.path)
