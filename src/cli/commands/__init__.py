# CLI commands module
"""
CLIコマンド実装パッケージ

各コマンドは独立したモジュールとして実装され、
main.py から登録されます。
"""

from .lifecycle import lifecycle_commands
from .metrics import metrics_commands
from .sample_size import sample_size_command
from .transfer import transfer_commands

__all__ = [
    "lifecycle_commands",
    "metrics_commands",
    "sample_size_command",
    "transfer_commands",
]
