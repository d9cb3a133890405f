"""Gradient updaters, normalization and cross-worker aggregation."""

from .gradient_updater import (
    GradientUpdater, UpdaterKind, UPDATERS, create_updater,
    Sgd, Nesterovs, AdaGrad, RmsProp, Adam, AdaDelta, NoOpUpdater,
)
from .normalization import GradientNormalization, normalize_gradients
from .aggregator import (
    GradientUpdaterAggregator, UpdaterAggregator, MultiLayerUpdaterAggregator, aggregate_updaters,
)
from .base_updater import BaseUpdater, LayerUpdater
from .multilayer import MultiLayerUpdater

__all__ = [
    'GradientUpdater', 'UpdaterKind', 'UPDATERS', 'create_updater',
    'Sgd', 'Nesterovs', 'AdaGrad', 'RmsProp', 'Adam', 'AdaDelta', 'NoOpUpdater',
    'GradientNormalization', 'normalize_gradients',
    'GradientUpdaterAggregator', 'UpdaterAggregator', 'MultiLayerUpdaterAggregator', 'aggregate_updaters',
    'BaseUpdater', 'LayerUpdater', 'MultiLayerUpdater',
]
