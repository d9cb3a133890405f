"""Layer updater: turns a layer's raw gradients into the steps applied to its parameters."""

import logging
from abc import ABC, abstractmethod
from typing import Dict

import torch

from dist_dl_train.errors import ConfigurationError
from dist_dl_train.models.params import BIAS_KEY
from dist_dl_train.updater.aggregator import UpdaterAggregator
from dist_dl_train.updater.gradient_updater import GradientUpdater, UpdaterKind, create_updater
from dist_dl_train.updater.normalization import normalize_gradients

logger = logging.getLogger("dist_dl_train.updater")


class BaseUpdater(ABC):
    """
    Applies normalization, per-parameter updaters and regularization to the
    gradients of one layer.

    The layer passed to ``update`` must expose ``conf`` (a
    NeuralNetConfiguration) and ``get_param(name)``.
    """

    def __init__(self):
        self.updater_for_variable: Dict[str, GradientUpdater] = {}

    @torch.no_grad()
    def update(self, layer, gradient: Dict[str, torch.Tensor], iteration: int, mini_batch_size: int) -> None:
        """
        Transform a layer's gradients in place into parameter steps.

        Args:
            layer: Layer the gradients belong to
            gradient: Mapping of parameter name to raw gradient; entries are replaced
            iteration: Current training iteration
            mini_batch_size: Number of examples the gradient was summed over
        """
        self.pre_apply(layer, gradient, iteration)
        for param_name, param_gradient in list(gradient.items()):
            if layer.conf.use_schedules:
                self.check_schedules(layer, iteration, param_name)

            updater = self.init(param_name, param_gradient, layer)
            step = updater.get_gradient(param_gradient, iteration)
            self.post_apply(layer, step, param_name, mini_batch_size)
            gradient[param_name] = step

    def pre_apply(self, layer, gradient: Dict[str, torch.Tensor], iteration: int) -> None:
        """Apply the layer's gradient normalization policy (no-op for NONE)."""
        layer_conf = layer.conf.layer
        normalize_gradients(gradient, layer_conf.gradient_normalization,
                            layer_conf.gradient_normalization_threshold)

    def post_apply(self, layer, gradient: torch.Tensor, param: str, mini_batch_size: int) -> None:
        """Add L1/L2 regularization terms (not for the bias) and scale by the mini-batch size."""
        conf = layer.conf
        layer_conf = conf.layer
        if conf.use_regularization and param != BIAS_KEY:
            params = layer.get_param(param)
            if layer_conf.l2 > 0:
                gradient.add_(params * layer_conf.l2)
            if layer_conf.l1 > 0:
                gradient.add_(torch.sign(params) * layer_conf.l1)
        if conf.mini_batch:
            if mini_batch_size < 1:
                raise ConfigurationError(f"mini_batch_size must be >= 1, got {mini_batch_size}")
            gradient.div_(mini_batch_size)

    def check_schedules(self, layer, iteration: int, param: str) -> None:
        """Update learning rate and/or momentum if a schedule entry exists for this iteration."""
        layer_conf = layer.conf.layer
        existing = self.updater_for_variable.get(param)

        if iteration in layer_conf.learning_rate_schedule:
            layer_conf.learning_rate = layer_conf.learning_rate_schedule[iteration]
            logger.debug(f"Iteration {iteration}: learning rate -> {layer_conf.learning_rate} ({param})")
            if existing is not None:
                existing.update(layer_conf.learning_rate)
        if iteration in layer_conf.momentum_schedule:
            layer_conf.momentum = layer_conf.momentum_schedule[iteration]
            logger.debug(f"Iteration {iteration}: momentum -> {layer_conf.momentum} ({param})")
            if existing is not None:
                existing.update(layer_conf.learning_rate, layer_conf.momentum)

    def init(self, variable: str, gradient: torch.Tensor, layer) -> GradientUpdater:
        """Return the updater for a parameter, creating it on first use."""
        updater = self.updater_for_variable.get(variable)
        if updater is None:
            updater = self.create_updater(variable, gradient, layer)
            self.updater_for_variable[variable] = updater
        return updater

    @abstractmethod
    def create_updater(self, variable: str, gradient: torch.Tensor, layer) -> GradientUpdater:
        """Build a new per-parameter updater."""

    def get_aggregator(self, add_this: bool = True) -> UpdaterAggregator:
        aggregator = UpdaterAggregator()
        if add_this:
            aggregator.aggregate(self)
        return aggregator

    def clone(self) -> 'BaseUpdater':
        """
        Deep copy. Each per-parameter updater is rebuilt through its own
        aggregator so no tensor is shared with the original.
        """
        updater = type(self)()
        updater.updater_for_variable = {
            name: gradient_updater.get_aggregator(True).get_updater()
            for name, gradient_updater in self.updater_for_variable.items()
        }
        return updater

    def __eq__(self, other):
        if not isinstance(other, BaseUpdater):
            return False
        return self.updater_for_variable == other.updater_for_variable

    __hash__ = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.updater_for_variable})"


def updater_from_layer_conf(layer_conf) -> GradientUpdater:
    """Build the per-parameter updater described by a LayerConfiguration."""
    kind = layer_conf.updater
    hyper: Dict[str, float] = {}
    if kind == UpdaterKind.NONE:
        pass
    elif kind == UpdaterKind.SGD:
        hyper['learning_rate'] = layer_conf.learning_rate
    elif kind == UpdaterKind.NESTEROVS:
        hyper['learning_rate'] = layer_conf.learning_rate
        hyper['momentum'] = layer_conf.momentum
    elif kind == UpdaterKind.ADAGRAD:
        hyper['learning_rate'] = layer_conf.learning_rate
    elif kind == UpdaterKind.RMSPROP:
        hyper['learning_rate'] = layer_conf.learning_rate
        hyper['rms_decay'] = layer_conf.rms_decay
    elif kind == UpdaterKind.ADAM:
        hyper['learning_rate'] = layer_conf.learning_rate
        hyper['beta1'] = layer_conf.adam_mean_decay
        hyper['beta2'] = layer_conf.adam_var_decay
    elif kind == UpdaterKind.ADADELTA:
        hyper['rho'] = layer_conf.rho
    else:
        raise ConfigurationError(f"Unknown updater kind: {kind!r}")

    if layer_conf.epsilon is not None and kind in (
            UpdaterKind.ADAGRAD, UpdaterKind.RMSPROP, UpdaterKind.ADAM, UpdaterKind.ADADELTA):
        hyper['epsilon'] = layer_conf.epsilon
    return create_updater(kind, **hyper)


class LayerUpdater(BaseUpdater):
    """BaseUpdater whose per-parameter updaters follow the layer's configured kind."""

    def create_updater(self, variable: str, gradient: torch.Tensor, layer) -> GradientUpdater:
        return updater_from_layer_conf(layer.conf.layer)
