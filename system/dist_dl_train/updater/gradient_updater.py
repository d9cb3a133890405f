"""Per-parameter gradient updaters.

A GradientUpdater turns the raw gradient of one parameter tensor into the step
that is subtracted from that parameter, keeping whatever running state the rule
needs (momentum velocity, squared-gradient history, ...).

The set of updaters is closed: every kind is listed in ``UpdaterKind`` and
registered in ``UPDATERS``. Aggregators rebuild updaters through
``create_updater`` from the kind tag plus averaged hyperparameters and state.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Optional, Tuple, Type

import torch

from dist_dl_train.errors import ConfigurationError


class UpdaterKind(Enum):
    SGD = 'sgd'
    NESTEROVS = 'nesterovs'
    ADAGRAD = 'adagrad'
    RMSPROP = 'rmsprop'
    ADAM = 'adam'
    ADADELTA = 'adadelta'
    NONE = 'none'


def _tensors_equal(a: Optional[torch.Tensor], b: Optional[torch.Tensor]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a.shape == b.shape and torch.equal(a, b)


class GradientUpdater(ABC):
    """
    Base class for per-parameter updaters.

    Subclasses declare ``kind``, the names of their scalar ``HYPERPARAMETERS``
    and the names of their tensor ``STATE`` attributes. State tensors start as
    None and are allocated on the first call to get_gradient.
    """
    kind: UpdaterKind
    HYPERPARAMETERS: Tuple[str, ...] = ('learning_rate',)
    STATE: Tuple[str, ...] = ()

    def __init__(self, learning_rate: float = 1e-1):
        self.learning_rate = float(learning_rate)
        for name in self.STATE:
            setattr(self, name, None)

    @abstractmethod
    def get_gradient(self, gradient: torch.Tensor, iteration: int) -> torch.Tensor:
        """
        Compute the update step for a raw gradient.

        Args:
            gradient: Raw gradient of the parameter
            iteration: Current training iteration (0-based)

        Returns:
            The step to subtract from the parameter
        """

    def update(self, learning_rate: float, momentum: Optional[float] = None) -> None:
        """Push new schedule values into this updater."""
        self.learning_rate = float(learning_rate)

    def hyperparameters(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in self.HYPERPARAMETERS}

    def state(self) -> Dict[str, Optional[torch.Tensor]]:
        return {name: getattr(self, name) for name in self.STATE}

    def set_state(self, state: Dict[str, Optional[torch.Tensor]]) -> None:
        for name, value in state.items():
            if name not in self.STATE:
                raise ConfigurationError(f"{type(self).__name__} has no state field {name!r}")
            setattr(self, name, value)

    def get_aggregator(self, add_this: bool = True):
        """
        Create an aggregator for combining this updater's state with others.

        Args:
            add_this: Seed the aggregator with this updater's state

        Returns:
            GradientUpdaterAggregator for this updater's kind
        """
        from dist_dl_train.updater.aggregator import GradientUpdaterAggregator
        aggregator = GradientUpdaterAggregator(self.kind)
        if add_this:
            aggregator.aggregate(self)
        return aggregator

    def clone(self) -> 'GradientUpdater':
        """Independent copy, materialized through this updater's own aggregator."""
        return self.get_aggregator(True).get_updater()

    def _zeros_like_if_none(self, name: str, gradient: torch.Tensor) -> torch.Tensor:
        value = getattr(self, name)
        if value is None:
            value = torch.zeros_like(gradient)
            setattr(self, name, value)
        return value

    def __eq__(self, other):
        if not isinstance(other, GradientUpdater) or other.kind != self.kind:
            return False
        if self.hyperparameters() != other.hyperparameters():
            return False
        mine, theirs = self.state(), other.state()
        return all(_tensors_equal(mine[name], theirs[name]) for name in self.STATE)

    __hash__ = None

    def __repr__(self) -> str:
        hp = ", ".join(f"{k}={v}" for k, v in self.hyperparameters().items())
        initialized = all(v is not None for v in self.state().values())
        return f"{type(self).__name__}({hp}, initialized={initialized})"


class Sgd(GradientUpdater):
    """Plain SGD: step = lr * g."""
    kind = UpdaterKind.SGD

    def get_gradient(self, gradient: torch.Tensor, iteration: int) -> torch.Tensor:
        return gradient * self.learning_rate


class Nesterovs(GradientUpdater):
    """
    Nesterov momentum.

    v' = mu * v - lr * g, step = mu * v - (1 + mu) * v'
    """
    kind = UpdaterKind.NESTEROVS
    HYPERPARAMETERS = ('learning_rate', 'momentum')
    STATE = ('v',)

    def __init__(self, learning_rate: float = 1e-1, momentum: float = 0.5):
        super().__init__(learning_rate)
        self.momentum = float(momentum)

    def update(self, learning_rate: float, momentum: Optional[float] = None) -> None:
        super().update(learning_rate)
        if momentum is not None:
            self.momentum = float(momentum)

    def get_gradient(self, gradient: torch.Tensor, iteration: int) -> torch.Tensor:
        v_prev = self._zeros_like_if_none('v', gradient)
        self.v = v_prev * self.momentum - gradient * self.learning_rate
        return v_prev * self.momentum - self.v * (1.0 + self.momentum)


class AdaGrad(GradientUpdater):
    kind = UpdaterKind.ADAGRAD
    HYPERPARAMETERS = ('learning_rate', 'epsilon')
    STATE = ('historical_gradient',)

    def __init__(self, learning_rate: float = 1e-1, epsilon: float = 1e-6):
        super().__init__(learning_rate)
        self.epsilon = float(epsilon)

    def get_gradient(self, gradient: torch.Tensor, iteration: int) -> torch.Tensor:
        history = self._zeros_like_if_none('historical_gradient', gradient)
        history.add_(gradient * gradient)
        return gradient * self.learning_rate / (history.sqrt() + self.epsilon)


class RmsProp(GradientUpdater):
    kind = UpdaterKind.RMSPROP
    HYPERPARAMETERS = ('learning_rate', 'rms_decay', 'epsilon')
    STATE = ('last_gradient',)

    def __init__(self, learning_rate: float = 1e-1, rms_decay: float = 0.95, epsilon: float = 1e-8):
        super().__init__(learning_rate)
        self.rms_decay = float(rms_decay)
        self.epsilon = float(epsilon)

    def get_gradient(self, gradient: torch.Tensor, iteration: int) -> torch.Tensor:
        last = self._zeros_like_if_none('last_gradient', gradient)
        last.mul_(self.rms_decay).add_(gradient * gradient * (1.0 - self.rms_decay))
        return gradient * self.learning_rate / (last + self.epsilon).sqrt()


class Adam(GradientUpdater):
    """Adam with bias correction; t = iteration + 1."""
    kind = UpdaterKind.ADAM
    HYPERPARAMETERS = ('learning_rate', 'beta1', 'beta2', 'epsilon')
    STATE = ('m', 'v')

    def __init__(self, learning_rate: float = 1e-3, beta1: float = 0.9, beta2: float = 0.999,
                 epsilon: float = 1e-8):
        super().__init__(learning_rate)
        self.beta1 = float(beta1)
        self.beta2 = float(beta2)
        self.epsilon = float(epsilon)

    def get_gradient(self, gradient: torch.Tensor, iteration: int) -> torch.Tensor:
        m = self._zeros_like_if_none('m', gradient)
        v = self._zeros_like_if_none('v', gradient)
        m.mul_(self.beta1).add_(gradient * (1.0 - self.beta1))
        v.mul_(self.beta2).add_(gradient * gradient * (1.0 - self.beta2))

        t = iteration + 1
        alpha_t = self.learning_rate * (1.0 - self.beta2 ** t) ** 0.5 / (1.0 - self.beta1 ** t)
        return m * alpha_t / (v.sqrt() + self.epsilon)


class AdaDelta(GradientUpdater):
    """AdaDelta. The learning rate is carried for schedule bookkeeping only."""
    kind = UpdaterKind.ADADELTA
    HYPERPARAMETERS = ('learning_rate', 'rho', 'epsilon')
    STATE = ('msg', 'msdx')

    def __init__(self, learning_rate: float = 1.0, rho: float = 0.95, epsilon: float = 1e-6):
        super().__init__(learning_rate)
        self.rho = float(rho)
        self.epsilon = float(epsilon)

    def get_gradient(self, gradient: torch.Tensor, iteration: int) -> torch.Tensor:
        msg = self._zeros_like_if_none('msg', gradient)
        msdx = self._zeros_like_if_none('msdx', gradient)
        msg.mul_(self.rho).add_(gradient * gradient * (1.0 - self.rho))
        dx = (msdx + self.epsilon).sqrt() / (msg + self.epsilon).sqrt() * gradient
        msdx.mul_(self.rho).add_(dx * dx * (1.0 - self.rho))
        return dx


class NoOpUpdater(GradientUpdater):
    """Passes the gradient through unchanged."""
    kind = UpdaterKind.NONE

    def get_gradient(self, gradient: torch.Tensor, iteration: int) -> torch.Tensor:
        return gradient


UPDATERS: Dict[UpdaterKind, Type[GradientUpdater]] = {
    UpdaterKind.SGD: Sgd,
    UpdaterKind.NESTEROVS: Nesterovs,
    UpdaterKind.ADAGRAD: AdaGrad,
    UpdaterKind.RMSPROP: RmsProp,
    UpdaterKind.ADAM: Adam,
    UpdaterKind.ADADELTA: AdaDelta,
    UpdaterKind.NONE: NoOpUpdater,
}


def create_updater(kind: UpdaterKind, **hyperparameters: float) -> GradientUpdater:
    """
    Construct an updater of the given kind.

    Args:
        kind: Updater kind
        **hyperparameters: Constructor arguments; unknown names are rejected

    Returns:
        A fresh updater with uninitialized state
    """
    cls = UPDATERS.get(kind)
    if cls is None:
        raise ConfigurationError(f"Unknown updater kind: {kind!r}")
    unknown = set(hyperparameters) - set(cls.HYPERPARAMETERS)
    if unknown:
        raise ConfigurationError(f"{cls.__name__} does not accept {sorted(unknown)}")
    return cls(**hyperparameters)
