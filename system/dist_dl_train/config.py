import json
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml

from dist_dl_train.errors import ConfigurationError


def load_config(path: str) -> Dict[str, Any]:
    """Load a YAML or JSON config file into a dict."""
    with open(path, 'r', encoding='utf-8') as f:
        content = f.read()

    path_lower = path.lower()
    if path_lower.endswith(('.yaml', '.yml')):
        data = yaml.safe_load(content) or {}
    else:
        data = json.loads(content)
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping at the top level")
    return data


@dataclass
class TrainingConfig:
    """
    Settings for a parameter averaging run (the ``training:`` config section).

    Attributes:
        num_partitions: Number of partitions the dataset is split into per round.
        num_workers: Size of the thread pool that runs partition tasks.
        num_rounds: Number of broadcast/train/reduce rounds.
        num_examples: Size of the synthetic dataset used by the CLI.
        seed: Seed for partition shuffling and synthetic data.
        shuffle: Whether records are shuffled before partitioning each round.
    """
    num_partitions: int = 4
    num_workers: int = 2
    num_rounds: int = 5
    num_examples: int = 512
    seed: int = 42
    shuffle: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TrainingConfig':
        data = data or {}
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown training config keys: {sorted(unknown)}")
        try:
            cfg = cls(**{
                name: bool(value) if name == 'shuffle' else int(value)
                for name, value in data.items()
            })
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid training config value: {e}") from e
        if cfg.num_partitions < 1:
            raise ConfigurationError("num_partitions must be >= 1")
        if cfg.num_workers < 1:
            raise ConfigurationError("num_workers must be >= 1")
        if cfg.num_rounds < 0:
            raise ConfigurationError("num_rounds must be >= 0")
        return cfg
