# CLI commands module
"""
CLIコマンド実装パッケージ

各コマンドは独立したモジュールとして実装され、
main.py から登録されます。
"""

from .events import events_command
from .results import results_command
from .sweep import sweep_command
from .traffic import traffic_command

__all__ = [
    "events_command",
    "results_command",
    "sweep_command",
    "traffic_command",
]
