"""CLI-specific configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class CLIConfig:
    """CLI settings.

    環境変数:
        AB_TEST_OWNER_ID: 実験の所有者ID（オプション）
    """

    default_output_format: str = "table"
    default_owner_id: str = "cli"
    max_list_limit: int = 1000

    def __post_init__(self) -> None:
        env_owner = os.getenv("AB_TEST_OWNER_ID")
        if env_owner:
            self.default_owner_id = env_owner

    def validate(self) -> None:
        if self.default_output_format not in {"table", "json"}:
            raise ValueError("default_output_format は table/json のいずれかです")
        if not self.default_owner_id:
            raise ValueError("default_owner_id は空にできません")
        if self.max_list_limit <= 0:
            raise ValueError("max_list_limit は正の整数である必要があります")
