"""Dense and output layers.

Layers own their parameter tensors but not autograd state: the network passes
leaf copies of the parameters into ``pre_output`` when it needs gradients.
"""

import math
from typing import Callable, Dict, Optional

import torch

from dist_dl_train.errors import ConfigurationError
from dist_dl_train.models.conf import NeuralNetConfiguration
from dist_dl_train.models.params import BIAS_KEY, WEIGHT_KEY

ACTIVATIONS: Dict[str, Callable[[torch.Tensor], torch.Tensor]] = {
    'identity': lambda z: z,
    'sigmoid': torch.sigmoid,
    'tanh': torch.tanh,
    'relu': torch.relu,
    'softmax': lambda z: torch.softmax(z, dim=1),
}

WEIGHT_INITS = ('xavier', 'uniform', 'relu', 'normal', 'zero')

LOSS_FUNCTIONS = ('mcxent', 'negativeloglikelihood', 'mse')


class DenseLayer:
    """Fully connected layer: activation(x @ W + b), W is n_in x n_out, b is 1 x n_out."""

    def __init__(self, conf: NeuralNetConfiguration, index: int):
        layer_conf = conf.layer
        if layer_conf.activation not in ACTIVATIONS:
            raise ConfigurationError(f"Unknown activation: {layer_conf.activation}")
        if layer_conf.weight_init not in WEIGHT_INITS:
            raise ConfigurationError(f"Unknown weight init: {layer_conf.weight_init}")
        self.conf = conf
        self.index = index
        self.params: Dict[str, torch.Tensor] = {}

    @property
    def n_in(self) -> int:
        return self.conf.layer.n_in

    @property
    def n_out(self) -> int:
        return self.conf.layer.n_out

    def num_params(self) -> int:
        return self.n_in * self.n_out + self.n_out

    def param_shape(self, name: str):
        if name == WEIGHT_KEY:
            return (self.n_in, self.n_out)
        if name == BIAS_KEY:
            return (1, self.n_out)
        raise KeyError(name)

    def init_params(self, generator: torch.Generator) -> None:
        n_in, n_out = self.n_in, self.n_out
        scheme = self.conf.layer.weight_init
        if scheme == 'zero':
            weights = torch.zeros(n_in, n_out)
        elif scheme == 'uniform':
            a = 1.0 / math.sqrt(n_in)
            weights = (torch.rand(n_in, n_out, generator=generator) * 2.0 - 1.0) * a
        elif scheme == 'relu':
            weights = torch.randn(n_in, n_out, generator=generator) * math.sqrt(2.0 / n_in)
        elif scheme == 'normal':
            weights = torch.randn(n_in, n_out, generator=generator) / math.sqrt(n_in)
        else:
            weights = torch.randn(n_in, n_out, generator=generator) * math.sqrt(2.0 / (n_in + n_out))
        self.params = {WEIGHT_KEY: weights, BIAS_KEY: torch.zeros(1, n_out)}

    def get_param(self, name: str) -> torch.Tensor:
        return self.params[name]

    def set_param(self, name: str, value: torch.Tensor) -> None:
        expected = self.param_shape(name)
        if tuple(value.shape) != expected:
            raise ConfigurationError(
                f"Layer {self.index} param {name} expects shape {expected}, got {tuple(value.shape)}")
        self.params[name] = value

    def pre_output(self, x: torch.Tensor, params: Optional[Dict[str, torch.Tensor]] = None) -> torch.Tensor:
        params = params if params is not None else self.params
        return x @ params[WEIGHT_KEY] + params[BIAS_KEY]

    def activate(self, x: torch.Tensor, params: Optional[Dict[str, torch.Tensor]] = None) -> torch.Tensor:
        return ACTIVATIONS[self.conf.layer.activation](self.pre_output(x, params))

    def regularization_score(self) -> float:
        """0.5 * l2 * ||W||^2 + l1 * |W|_1 when regularization is enabled (bias excluded)."""
        if not self.conf.use_regularization:
            return 0.0
        weights = self.params[WEIGHT_KEY]
        score = 0.0
        if self.conf.layer.l2 > 0:
            score += 0.5 * self.conf.layer.l2 * float(weights.pow(2).sum().item())
        if self.conf.layer.l1 > 0:
            score += self.conf.layer.l1 * float(weights.abs().sum().item())
        return score

    def __repr__(self) -> str:
        return f"{type(self).__name__}(index={self.index}, n_in={self.n_in}, n_out={self.n_out})"


class OutputLayer(DenseLayer):
    """Dense layer with a loss function. Losses are summed over examples."""

    def __init__(self, conf: NeuralNetConfiguration, index: int):
        super().__init__(conf, index)
        if conf.layer.loss_function not in LOSS_FUNCTIONS:
            raise ConfigurationError(f"Unknown loss function: {conf.layer.loss_function}")

    def compute_loss(self, x: torch.Tensor, labels: torch.Tensor,
                     params: Optional[Dict[str, torch.Tensor]] = None) -> torch.Tensor:
        """
        Summed loss of this layer's output for input activations ``x``.

        Args:
            x: Activations from the previous layer (or the features)
            labels: Targets, one row per example
            params: Parameter tensors to use instead of the layer's own

        Returns:
            Scalar tensor
        """
        z = self.pre_output(x, params)
        loss_function = self.conf.layer.loss_function
        activation = self.conf.layer.activation

        if loss_function == 'mse':
            output = ACTIVATIONS[activation](z)
            return 0.5 * (output - labels).pow(2).sum()

        # mcxent / negativeloglikelihood
        if activation == 'softmax':
            log_probs = torch.log_softmax(z, dim=1)
        else:
            log_probs = torch.log(ACTIVATIONS[activation](z).clamp_min(1e-12))
        return -(labels * log_probs).sum()


def build_layer(conf: NeuralNetConfiguration, index: int) -> DenseLayer:
    if conf.layer.is_output_layer:
        return OutputLayer(conf, index)
    return DenseLayer(conf, index)


__all__ = ['DenseLayer', 'OutputLayer', 'build_layer', 'ACTIVATIONS', 'LOSS_FUNCTIONS']
