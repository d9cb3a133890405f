"""Combining updater state from many workers.

Every aggregator keeps running sums and counts and only divides when an
updater is materialized, so aggregate/combine/merge are associative and
commutative: the result does not depend on the order in which worker results
arrive. Averaging N copies of the same state S gives S back.
"""

import logging
from typing import Dict, List, Optional, TYPE_CHECKING

import torch

from dist_dl_train.errors import AggregationError
from dist_dl_train.updater.gradient_updater import GradientUpdater, UpdaterKind, create_updater

if TYPE_CHECKING:
    from dist_dl_train.updater.base_updater import BaseUpdater, LayerUpdater
    from dist_dl_train.updater.multilayer import MultiLayerUpdater

logger = logging.getLogger("dist_dl_train.updater.aggregator")


class GradientUpdaterAggregator:
    """
    Averages the hyperparameters and state tensors of updaters of one kind.

    State fields are counted separately because an updater that never saw a
    gradient has no state yet; it still contributes its hyperparameters.
    A field whose contributions were all equal materializes as that exact
    value rather than as sum / count.
    """

    def __init__(self, kind: UpdaterKind):
        self.kind = kind
        self.count = 0
        self._hyper_sums: Dict[str, float] = {}
        self._hyper_common: Dict[str, Optional[float]] = {}
        self._state_sums: Dict[str, torch.Tensor] = {}
        self._state_counts: Dict[str, int] = {}
        self._state_common: Dict[str, Optional[torch.Tensor]] = {}

    def _check_kind(self, kind: UpdaterKind) -> None:
        if kind != self.kind:
            raise AggregationError(
                f"Cannot combine updater state of kind {kind.value} into aggregator of kind {self.kind.value}")

    def _add_hyper(self, name: str, value: float, common: Optional[float]) -> None:
        if name not in self._hyper_sums:
            self._hyper_sums[name] = value
            self._hyper_common[name] = common
            return
        self._hyper_sums[name] += value
        if self._hyper_common[name] != common:
            self._hyper_common[name] = None

    def _add_state(self, name: str, tensor: torch.Tensor, count: int, common: Optional[torch.Tensor]) -> None:
        existing = self._state_sums.get(name)
        if existing is None:
            self._state_sums[name] = tensor.detach().clone()
            self._state_counts[name] = count
            self._state_common[name] = None if common is None else common.detach().clone()
            return
        if existing.shape != tensor.shape:
            raise AggregationError(
                f"State {name!r} shape mismatch: {tuple(existing.shape)} vs {tuple(tensor.shape)}")
        existing.add_(tensor.detach())
        self._state_counts[name] += count
        mine = self._state_common[name]
        if mine is None or common is None or not torch.equal(mine, common):
            self._state_common[name] = None

    def aggregate(self, updater: GradientUpdater) -> None:
        """Fold one updater's state into this aggregator."""
        if not isinstance(updater, GradientUpdater):
            raise AggregationError(f"Expected a GradientUpdater, got {type(updater).__name__}")
        self._check_kind(updater.kind)
        for name, value in updater.hyperparameters().items():
            self._add_hyper(name, value, value)
        for name, tensor in updater.state().items():
            if tensor is not None:
                self._add_state(name, tensor, 1, tensor)
        self.count += 1

    def combine(self, other: 'GradientUpdaterAggregator') -> None:
        """Fold another aggregator (built from a different set of workers) into this one."""
        if not isinstance(other, GradientUpdaterAggregator):
            raise AggregationError(f"Expected a GradientUpdaterAggregator, got {type(other).__name__}")
        self._check_kind(other.kind)
        for name, value in other._hyper_sums.items():
            self._add_hyper(name, value, other._hyper_common[name])
        for name, tensor in other._state_sums.items():
            self._add_state(name, tensor, other._state_counts[name], other._state_common[name])
        self.count += other.count

    def copy(self) -> 'GradientUpdaterAggregator':
        dup = GradientUpdaterAggregator(self.kind)
        dup.combine(self)
        return dup

    def get_updater(self) -> GradientUpdater:
        """Materialize an updater holding the averaged hyperparameters and state."""
        if self.count == 0:
            raise AggregationError(f"No {self.kind.value} updater state has been aggregated")
        hyper = {}
        for name, total in self._hyper_sums.items():
            common = self._hyper_common[name]
            hyper[name] = total / self.count if common is None else common
        updater = create_updater(self.kind, **hyper)
        state = {}
        for name, total in self._state_sums.items():
            common = self._state_common[name]
            state[name] = total / self._state_counts[name] if common is None else common.clone()
        updater.set_state(state)
        return updater

    def __repr__(self) -> str:
        return f"GradientUpdaterAggregator(kind={self.kind.value}, count={self.count})"


class UpdaterAggregator:
    """
    Aggregates the per-parameter updaters of one layer, keyed by parameter name.
    """

    def __init__(self):
        self.aggregator_map: Dict[str, GradientUpdaterAggregator] = {}

    def aggregate(self, updater: 'BaseUpdater') -> None:
        """
        Fold one worker's layer updater into the running aggregate.

        The first updater seen for a parameter name seeds that name's aggregator.
        """
        updaters = getattr(updater, 'updater_for_variable', None)
        if updaters is None:
            raise AggregationError(f"Expected a layer updater, got {type(updater).__name__}")
        for name, gradient_updater in updaters.items():
            aggregator = self.aggregator_map.get(name)
            if aggregator is None:
                self.aggregator_map[name] = gradient_updater.get_aggregator(True)
                continue
            aggregator.aggregate(gradient_updater)

    def merge(self, other: 'UpdaterAggregator') -> None:
        """
        Combine with an aggregator built from another set of workers.

        An empty receiver adopts (a copy of) the other's state.
        """
        if not isinstance(other, UpdaterAggregator):
            raise AggregationError(f"Cannot merge {type(other).__name__} into UpdaterAggregator")
        if not self.aggregator_map:
            self.aggregator_map = {name: agg.copy() for name, agg in other.aggregator_map.items()}
            return
        for name, second in other.aggregator_map.items():
            first = self.aggregator_map.get(name)
            if first is None:
                self.aggregator_map[name] = second.copy()
            else:
                first.combine(second)

    def get_updater(self) -> 'LayerUpdater':
        from dist_dl_train.updater.base_updater import LayerUpdater
        updater = LayerUpdater()
        for name, aggregator in self.aggregator_map.items():
            updater.updater_for_variable[name] = aggregator.get_updater()
        return updater


class MultiLayerUpdaterAggregator:
    """Aggregates network updaters: one UpdaterAggregator per layer."""

    def __init__(self):
        self.layer_aggregators: List[UpdaterAggregator] = []
        self.num_aggregated = 0

    def aggregate(self, updater: 'MultiLayerUpdater') -> None:
        layer_updaters = getattr(updater, 'layer_updaters', None)
        if layer_updaters is None:
            raise AggregationError(f"Expected a MultiLayerUpdater, got {type(updater).__name__}")
        if not self.layer_aggregators:
            self.layer_aggregators = [UpdaterAggregator() for _ in layer_updaters]
        elif len(self.layer_aggregators) != len(layer_updaters):
            raise AggregationError(
                f"Layer count mismatch: aggregator has {len(self.layer_aggregators)}, "
                f"updater has {len(layer_updaters)}")
        for aggregator, layer_updater in zip(self.layer_aggregators, layer_updaters):
            aggregator.aggregate(layer_updater)
        self.num_aggregated += 1

    def merge(self, other: 'MultiLayerUpdaterAggregator') -> None:
        if not isinstance(other, MultiLayerUpdaterAggregator):
            raise AggregationError(f"Cannot merge {type(other).__name__} into MultiLayerUpdaterAggregator")
        if not other.layer_aggregators:
            return
        if not self.layer_aggregators:
            self.layer_aggregators = [UpdaterAggregator() for _ in other.layer_aggregators]
        elif len(self.layer_aggregators) != len(other.layer_aggregators):
            raise AggregationError(
                f"Layer count mismatch: {len(self.layer_aggregators)} vs {len(other.layer_aggregators)}")
        for mine, theirs in zip(self.layer_aggregators, other.layer_aggregators):
            mine.merge(theirs)
        self.num_aggregated += other.num_aggregated

    def get_updater(self) -> 'MultiLayerUpdater':
        from dist_dl_train.updater.multilayer import MultiLayerUpdater
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Materializing network updater from {self.num_aggregated} aggregated updaters")
        return MultiLayerUpdater(layer_updaters=[agg.get_updater() for agg in self.layer_aggregators])


def aggregate_updaters(updaters: List['MultiLayerUpdater']) -> Optional['MultiLayerUpdater']:
    """Average a list of network updaters; returns None for an empty list."""
    if not updaters:
        return None
    aggregator = MultiLayerUpdaterAggregator()
    for updater in updaters:
        aggregator.aggregate(updater)
    return aggregator.get_updater()
