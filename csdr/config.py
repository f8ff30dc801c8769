"""
Layer Configuration

All hyperparameters are exposed as dataclasses so experiments can tweak
them in one place. Use `with_overrides(**kwargs)` for one-off changes and
`load_config(path)` to read a JSON file of overrides.
"""

import json
import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class _ConfigMixin:
    """Shared validation/override helpers for the config dataclasses."""

    def validate(self) -> None:
        raise NotImplementedError

    def with_overrides(self, **overrides):
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown {type(self).__name__} keys: {', '.join(sorted(unknown))}"
            )
        updated = replace(self, **overrides)
        updated.validate()
        return updated

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _check_range(name: str, value: float, low: float, high: Optional[float] = None) -> None:
    if value < low or (high is not None and value > high):
        bound = f"[{low}, {high}]" if high is not None else f">= {low}"
        raise ConfigurationError(f"{name} must be {bound}, got {value}")


@dataclass
class ComputeConfig(_ConfigMixin):
    """Kernel dispatch settings. num_workers == 0 runs every pass sequentially."""
    num_workers: int = 0
    batch_size1: int = 64
    batch_size2: Tuple[int, int] = (2, 2)
    seed: Optional[int] = None

    def validate(self) -> None:
        _check_range("num_workers", self.num_workers, 0)
        _check_range("batch_size1", self.batch_size1, 1)
        if len(self.batch_size2) != 2 or min(self.batch_size2) < 1:
            raise ConfigurationError(f"batch_size2 must be two values >= 1, got {self.batch_size2}")
        if self.seed is not None and self.seed < 0:
            raise ConfigurationError(f"seed must be non-negative, got {self.seed}")


@dataclass
class SparseCoderConfig(_ConfigMixin):
    alpha: float = 0.1          # Reconstruction learning rate
    explain_iters: int = 4      # Forward/reconstruct passes per step

    def validate(self) -> None:
        _check_range("alpha", self.alpha, 0.0)
        _check_range("explain_iters", self.explain_iters, 1)


@dataclass
class PredictorConfig(_ConfigMixin):
    alpha: float = 0.1          # Delta rule learning rate (0 disables learning)

    def validate(self) -> None:
        _check_range("alpha", self.alpha, 0.0)


@dataclass
class ReplayActorConfig(_ConfigMixin):
    alpha: float = 0.1          # Q learning rate
    gamma: float = 0.9          # Discount factor
    gap: float = 0.1            # Advantage (PAL) gap
    history_iters: int = 16     # Replayed sample pairs per step

    def validate(self) -> None:
        _check_range("alpha", self.alpha, 0.0)
        _check_range("gamma", self.gamma, 0.0, 1.0)
        _check_range("gap", self.gap, 0.0)
        _check_range("history_iters", self.history_iters, 0)


@dataclass
class TDActorConfig(_ConfigMixin):
    alpha: float = 0.5          # Value learning rate
    gamma: float = 0.9          # Discount factor
    epsilon: float = 0.1        # Exploration probability

    def validate(self) -> None:
        _check_range("alpha", self.alpha, 0.0)
        _check_range("gamma", self.gamma, 0.0, 1.0)
        _check_range("epsilon", self.epsilon, 0.0, 1.0)


@dataclass
class LearningConfig:
    """Bundle of every layer's configuration."""
    compute: ComputeConfig = field(default_factory=ComputeConfig)
    sparse_coder: SparseCoderConfig = field(default_factory=SparseCoderConfig)
    predictor: PredictorConfig = field(default_factory=PredictorConfig)
    replay_actor: ReplayActorConfig = field(default_factory=ReplayActorConfig)
    td_actor: TDActorConfig = field(default_factory=TDActorConfig)

    def validate(self) -> None:
        for f in fields(self):
            getattr(self, f.name).validate()

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {f.name: getattr(self, f.name).to_dict() for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Dict[str, Any]]) -> 'LearningConfig':
        config = cls()
        sections = {f.name for f in fields(cls)}

        for name, overrides in data.items():
            if name not in sections:
                raise ConfigurationError(f"Unknown config section: {name}")
            if not isinstance(overrides, dict):
                raise ConfigurationError(f"Config section {name} must be an object")
            if name == 'compute' and 'batch_size2' in overrides:
                overrides = dict(overrides, batch_size2=tuple(overrides['batch_size2']))
            setattr(config, name, getattr(config, name).with_overrides(**overrides))

        config.validate()
        return config


def load_config(path: Union[str, Path]) -> LearningConfig:
    """Load a LearningConfig from a JSON file of per-section overrides."""
    path = Path(path)

    with open(path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")

    config = LearningConfig.from_dict(data)
    logger.info("Loaded configuration from %s", path)
    return config
