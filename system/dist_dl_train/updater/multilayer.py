"""Network-level updater: one LayerUpdater per layer."""

from collections import OrderedDict
from typing import Dict, List, Optional

import torch

from dist_dl_train.errors import ConfigurationError
from dist_dl_train.models.params import network_param_key, split_network_param_key
from dist_dl_train.updater.aggregator import MultiLayerUpdaterAggregator
from dist_dl_train.updater.base_updater import LayerUpdater


class MultiLayerUpdater:
    """
    Updater state for a whole network.

    Network gradients are keyed ``"<layer index>_<param>"``; ``update`` splits
    them by layer, runs each layer's LayerUpdater and writes the steps back.
    """

    def __init__(self, num_layers: int = 0, layer_updaters: Optional[List[LayerUpdater]] = None):
        if layer_updaters is not None:
            self.layer_updaters: List[LayerUpdater] = list(layer_updaters)
        else:
            self.layer_updaters = [LayerUpdater() for _ in range(num_layers)]

    @property
    def num_layers(self) -> int:
        return len(self.layer_updaters)

    def update(self, network, gradient: Dict[str, torch.Tensor], iteration: int, mini_batch_size: int) -> None:
        """
        Transform network gradients in place.

        Args:
            network: Network exposing ``get_layer(index)``
            gradient: Network gradient keyed by ``"<layer>_<param>"``
            iteration: Current training iteration
            mini_batch_size: Number of examples in the batch
        """
        by_layer: Dict[int, Dict[str, torch.Tensor]] = OrderedDict()
        for key, value in gradient.items():
            try:
                index, param = split_network_param_key(key)
            except ValueError as e:
                raise ConfigurationError(str(e)) from e
            if index >= self.num_layers:
                raise ConfigurationError(
                    f"Gradient {key!r} refers to layer {index} but the updater has {self.num_layers} layers")
            by_layer.setdefault(index, OrderedDict())[param] = value

        for index, layer_gradient in by_layer.items():
            self.layer_updaters[index].update(network.get_layer(index), layer_gradient, iteration, mini_batch_size)
            for param, step in layer_gradient.items():
                gradient[network_param_key(index, param)] = step

    def get_aggregator(self, add_this: bool = True) -> MultiLayerUpdaterAggregator:
        aggregator = MultiLayerUpdaterAggregator()
        if add_this:
            aggregator.aggregate(self)
        return aggregator

    def clone(self) -> 'MultiLayerUpdater':
        return MultiLayerUpdater(layer_updaters=[u.clone() for u in self.layer_updaters])

    def __eq__(self, other):
        if not isinstance(other, MultiLayerUpdater):
            return False
        return self.layer_updaters == other.layer_updaters

    __hash__ = None

    def __repr__(self) -> str:
        return f"MultiLayerUpdater(num_layers={self.num_layers})"
