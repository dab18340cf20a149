# Config モジュール
from src.config.ab_testing_config import ABTestingConfig

__all__ = [
    "ABTestingConfig",
]
