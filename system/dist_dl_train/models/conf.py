"""Network configuration and its JSON form.

Each partition task rebuilds a network from this JSON, so
``MultiLayerConfiguration.from_json(conf.to_json())`` must reproduce the
configuration exactly.
"""

import json
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from dist_dl_train.errors import ConfigurationError
from dist_dl_train.updater.gradient_updater import UpdaterKind
from dist_dl_train.updater.normalization import GradientNormalization

E = TypeVar('E', bound=Enum)


def parse_enum(enum_cls: Type[E], value: Any) -> E:
    """Resolve an enum from an instance, its value or its name (case-insensitive)."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        key = value.strip().lower()
        for member in enum_cls:
            if member.value == key or member.name.lower() == key:
                return member
    raise ConfigurationError(f"Unknown {enum_cls.__name__}: {value!r}")


def _parse_schedule(raw: Optional[Dict[Any, Any]], name: str) -> Dict[int, float]:
    schedule: Dict[int, float] = {}
    for k, v in (raw or {}).items():
        try:
            iteration = int(k)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{name} keys must be iteration numbers, got {k!r}")
        if iteration < 0:
            raise ConfigurationError(f"{name} keys must be non-negative, got {iteration}")
        schedule[iteration] = float(v)
    return schedule


@dataclass
class LayerConfiguration:
    """
    Hyperparameters of a single layer.

    A layer with a ``loss_function`` is an output layer; it must be the last one.
    ``epsilon`` left as None means the updater's own default.
    """
    n_in: int
    n_out: int
    activation: str = 'sigmoid'
    loss_function: Optional[str] = None
    weight_init: str = 'xavier'
    updater: UpdaterKind = UpdaterKind.SGD
    learning_rate: float = 1e-1
    momentum: float = 0.5
    rho: float = 0.95
    rms_decay: float = 0.95
    adam_mean_decay: float = 0.9
    adam_var_decay: float = 0.999
    epsilon: Optional[float] = None
    l1: float = 0.0
    l2: float = 0.0
    gradient_normalization: GradientNormalization = GradientNormalization.NONE
    gradient_normalization_threshold: float = 1.0
    learning_rate_schedule: Dict[int, float] = field(default_factory=dict)
    momentum_schedule: Dict[int, float] = field(default_factory=dict)

    @property
    def is_output_layer(self) -> bool:
        return self.loss_function is not None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, dict):
                value = {str(k): v for k, v in value.items()}
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LayerConfiguration':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown layer config keys: {sorted(unknown)}")
        if 'n_in' not in data or 'n_out' not in data:
            raise ConfigurationError("Layer config requires n_in and n_out")
        kwargs = dict(data)
        if 'updater' in kwargs:
            kwargs['updater'] = parse_enum(UpdaterKind, kwargs['updater'])
        if 'gradient_normalization' in kwargs:
            kwargs['gradient_normalization'] = parse_enum(
                GradientNormalization, kwargs['gradient_normalization'])
        kwargs['learning_rate_schedule'] = _parse_schedule(
            kwargs.get('learning_rate_schedule'), 'learning_rate_schedule')
        kwargs['momentum_schedule'] = _parse_schedule(
            kwargs.get('momentum_schedule'), 'momentum_schedule')
        layer = cls(**kwargs)
        if layer.n_in < 1 or layer.n_out < 1:
            raise ConfigurationError(f"Layer sizes must be positive, got {layer.n_in}x{layer.n_out}")
        return layer


@dataclass
class NeuralNetConfiguration:
    """A layer's configuration together with the network-wide training flags."""
    layer: LayerConfiguration
    seed: int = 12345
    mini_batch: bool = True
    use_regularization: bool = False
    use_schedules: bool = False


@dataclass
class MultiLayerConfiguration:
    """Configuration of a feed-forward network: ordered layers plus global flags."""
    layers: List[LayerConfiguration]
    seed: int = 12345
    mini_batch: bool = True
    use_regularization: bool = False
    use_schedules: bool = False

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if not self.layers:
            raise ConfigurationError("Network configuration must contain at least one layer")
        for i in range(1, len(self.layers)):
            prev, cur = self.layers[i - 1], self.layers[i]
            if cur.n_in != prev.n_out:
                raise ConfigurationError(
                    f"Layer {i} n_in={cur.n_in} does not match layer {i - 1} n_out={prev.n_out}")
        for i, layer in enumerate(self.layers[:-1]):
            if layer.is_output_layer:
                raise ConfigurationError(f"Only the last layer may be an output layer (layer {i} has a loss)")
        if not self.layers[-1].is_output_layer:
            raise ConfigurationError("The last layer must define a loss_function")

    def conf(self, index: int) -> NeuralNetConfiguration:
        """Per-layer view combining layer hyperparameters with the network flags."""
        return NeuralNetConfiguration(
            layer=self.layers[index],
            seed=self.seed,
            mini_batch=self.mini_batch,
            use_regularization=self.use_regularization,
            use_schedules=self.use_schedules,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'seed': self.seed,
            'mini_batch': self.mini_batch,
            'use_regularization': self.use_regularization,
            'use_schedules': self.use_schedules,
            'layers': [layer.to_dict() for layer in self.layers],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MultiLayerConfiguration':
        if not isinstance(data, dict):
            raise ConfigurationError("Network configuration must be a mapping")
        known = {'seed', 'mini_batch', 'use_regularization', 'use_schedules', 'layers'}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown network config keys: {sorted(unknown)}")
        layers = [LayerConfiguration.from_dict(layer) for layer in data.get('layers') or []]
        return cls(
            layers=layers,
            seed=int(data.get('seed', 12345)),
            mini_batch=bool(data.get('mini_batch', True)),
            use_regularization=bool(data.get('use_regularization', False)),
            use_schedules=bool(data.get('use_schedules', False)),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, json_str: str) -> 'MultiLayerConfiguration':
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid network configuration JSON: {e}") from e
        return cls.from_dict(data)
