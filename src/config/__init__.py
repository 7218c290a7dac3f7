# Config モジュール
from src.config.experiment_config import ExperimentConfig, experiment_config

__all__ = [
    "ExperimentConfig",
    "experiment_config",
]
