"""Feed-forward network with a flat parameter vector and a pluggable updater."""

import copy
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

import torch

from dist_dl_train.data.dataset import DataSet
from dist_dl_train.errors import ConfigurationError
from dist_dl_train.models.conf import MultiLayerConfiguration
from dist_dl_train.models.layers import DenseLayer, OutputLayer, build_layer
from dist_dl_train.models.listeners import IterationListener
from dist_dl_train.models.params import PARAM_KEYS, network_param_key
from dist_dl_train.updater.multilayer import MultiLayerUpdater

logger = logging.getLogger("dist_dl_train.models.network")


class MultiLayerNetwork:
    """
    A stack of dense layers ending in an output layer.

    The parameter vector returned by ``params()`` is every layer's W then b, in
    layer order, each flattened row-major. ``set_parameters`` expects exactly
    that layout.
    """

    def __init__(self, conf: MultiLayerConfiguration):
        # Schedules mutate learning rate and momentum in the layer configs.
        self.conf = copy.deepcopy(conf)
        self.layers: List[DenseLayer] = []
        self.updater: Optional[MultiLayerUpdater] = None
        self.listeners: List[IterationListener] = []
        self.iteration_count = 0
        self._score = 0.0
        self._initialized = False

    @classmethod
    def from_json(cls, json_str: str) -> 'MultiLayerNetwork':
        return cls(MultiLayerConfiguration.from_json(json_str))

    def init(self) -> None:
        """Create layers and initialize parameters from the configured seed."""
        if self._initialized:
            return
        generator = torch.Generator().manual_seed(self.conf.seed)
        self.layers = []
        for i in range(len(self.conf.layers)):
            layer = build_layer(self.conf.conf(i), i)
            layer.init_params(generator)
            self.layers.append(layer)
        self.updater = MultiLayerUpdater(num_layers=len(self.layers))
        self._initialized = True
        logger.debug(f"Initialized network with {len(self.layers)} layers, {self.num_params()} params")

    def _require_init(self) -> None:
        if not self._initialized:
            raise ConfigurationError("Network is not initialized; call init() first")

    @property
    def num_layers(self) -> int:
        return len(self.layers)

    def get_layer(self, index: int) -> DenseLayer:
        return self.layers[index]

    def output_layer(self) -> OutputLayer:
        return self.layers[-1]

    def num_params(self) -> int:
        """Declared parameter count, computed from the configuration."""
        return sum(layer.n_in * layer.n_out + layer.n_out for layer in self.conf.layers)

    def params(self) -> torch.Tensor:
        """Flat copy of all parameters."""
        self._require_init()
        return torch.cat([layer.get_param(key).reshape(-1) for layer in self.layers for key in PARAM_KEYS])

    def set_parameters(self, params: torch.Tensor) -> None:
        """
        Load a flat parameter vector.

        Raises:
            ConfigurationError: If the vector length differs from num_params()
        """
        self._require_init()
        flat = params.reshape(-1) if params.dim() > 1 else params
        if flat.numel() != self.num_params():
            raise ConfigurationError(
                f"Parameter vector has {flat.numel()} values, network expects {self.num_params()}")
        offset = 0
        for layer in self.layers:
            for key in PARAM_KEYS:
                shape = layer.param_shape(key)
                length = shape[0] * shape[1]
                layer.set_param(key, flat[offset:offset + length].reshape(shape).detach().clone())
                offset += length

    def get_updater(self) -> MultiLayerUpdater:
        self._require_init()
        return self.updater

    def set_updater(self, updater: MultiLayerUpdater) -> None:
        self._require_init()
        if updater.num_layers != self.num_layers:
            raise ConfigurationError(
                f"Updater has {updater.num_layers} layers, network has {self.num_layers}")
        self.updater = updater

    def set_listeners(self, *listeners: IterationListener) -> None:
        self.listeners = list(listeners)

    def score(self) -> float:
        """Score of the last fit step (average loss per example plus regularization)."""
        return self._score

    @torch.no_grad()
    def output(self, features: torch.Tensor) -> torch.Tensor:
        self._require_init()
        x = features
        for layer in self.layers:
            x = layer.activate(x)
        return x

    def compute_gradient_and_score(self, data: DataSet) -> Tuple[Dict[str, torch.Tensor], float]:
        """
        Forward and backward pass over a batch.

        Gradients are of the summed loss; dividing by the batch size is the
        updater's job (mini-batch mode).

        Returns:
            Tuple of (gradient keyed "<layer>_<param>", score)
        """
        self._require_init()
        leaves: Dict[str, torch.Tensor] = OrderedDict()
        layer_params: List[Dict[str, torch.Tensor]] = []
        for i, layer in enumerate(self.layers):
            params = {}
            for key in PARAM_KEYS:
                leaf = layer.get_param(key).detach().clone().requires_grad_(True)
                params[key] = leaf
                leaves[network_param_key(i, key)] = leaf
            layer_params.append(params)

        with torch.enable_grad():
            x = data.features
            for layer, params in zip(self.layers[:-1], layer_params[:-1]):
                x = layer.activate(x, params)
            loss = self.output_layer().compute_loss(x, data.labels, layer_params[-1])
            grads = torch.autograd.grad(loss, list(leaves.values()))

        gradient = OrderedDict((key, g.detach()) for key, g in zip(leaves.keys(), grads))
        score = float(loss.item()) / data.num_examples()
        score += sum(layer.regularization_score() for layer in self.layers)
        return gradient, score

    def fit(self, data: DataSet) -> None:
        """Run one training step (forward, backward, update) over the whole batch."""
        if not self._initialized:
            self.init()
        num_examples = data.num_examples()
        if num_examples == 0:
            logger.warning("fit() called with an empty dataset; skipping")
            return
        if data.num_inputs() != self.layers[0].n_in or data.num_outcomes() != self.layers[-1].n_out:
            raise ConfigurationError(
                f"Data shape {data.num_inputs()}->{data.num_outcomes()} does not match network "
                f"{self.layers[0].n_in}->{self.layers[-1].n_out}")

        gradient, self._score = self.compute_gradient_and_score(data)
        self.updater.update(self, gradient, self.iteration_count, num_examples)

        with torch.no_grad():
            for i, layer in enumerate(self.layers):
                for key in PARAM_KEYS:
                    layer.get_param(key).sub_(gradient[network_param_key(i, key)])

        for listener in self.listeners:
            listener.iteration_done(self, self.iteration_count)
        self.iteration_count += 1

    def clone(self) -> 'MultiLayerNetwork':
        """Independent copy with the same configuration, parameters and updater state."""
        network = MultiLayerNetwork(self.conf)
        network.init()
        if self._initialized:
            network.set_parameters(self.params())
            network.set_updater(self.updater.clone())
        network.iteration_count = self.iteration_count
        return network
