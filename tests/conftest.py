# テスト共通設定
import pytest


@pytest.fixture(autouse=True)
def clear_ab_testing_env(monkeypatch):
    """環境変数による設定の上書きを無効化"""
    for name in ("AB_TESTING_DB_PATH", "AB_TESTING_CONFIDENCE_LEVEL", "AB_TESTING_AUTO_SAVE"):
        monkeypatch.delenv(name, raising=False)
