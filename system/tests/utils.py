"""Test helpers."""

from typing import Any, Dict

import torch

from dist_dl_train.data.dataset import DataSet, create_synthetic_dataset
from dist_dl_train.models.conf import LayerConfiguration, MultiLayerConfiguration
from dist_dl_train.updater.gradient_updater import UpdaterKind


def make_conf(updater: UpdaterKind = UpdaterKind.SGD, n_in: int = 4, n_hidden: int = 5, n_out: int = 3,
              layer_overrides: Dict[str, Any] = None, **network_flags) -> MultiLayerConfiguration:
    """Two-layer classifier: tanh hidden layer and softmax/mcxent output."""
    overrides = dict(layer_overrides or {})
    hidden = LayerConfiguration(n_in=n_in, n_out=n_hidden, activation='tanh', updater=updater, **overrides)
    output = LayerConfiguration(n_in=n_hidden, n_out=n_out, activation='softmax', loss_function='mcxent',
                                updater=updater, **overrides)
    return MultiLayerConfiguration(layers=[hidden, output], **network_flags)


def make_dataset(num_examples: int = 32, n_in: int = 4, n_out: int = 3, seed: int = 7) -> DataSet:
    return create_synthetic_dataset(num_examples=num_examples, num_inputs=n_in, num_classes=n_out, seed=seed)


class FakeLayer:
    """Minimal layer for updater tests: a conf plus named parameters."""

    def __init__(self, conf, params: Dict[str, torch.Tensor]):
        self.conf = conf
        self.params = params

    def get_param(self, name: str) -> torch.Tensor:
        return self.params[name]
