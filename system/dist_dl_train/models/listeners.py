"""Iteration listeners invoked by MultiLayerNetwork after every fit step."""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dist_dl_train.models.network import MultiLayerNetwork
    from dist_dl_train.sync.accumulator import MaxAccumulator

logger = logging.getLogger("dist_dl_train.models.listeners")


class IterationListener(ABC):

    @abstractmethod
    def iteration_done(self, model: 'MultiLayerNetwork', iteration: int) -> None:
        pass


class ScoreIterationListener(IterationListener):
    """Logs the model score every ``print_iterations`` iterations."""

    def __init__(self, print_iterations: int = 10):
        self.print_iterations = max(1, int(print_iterations))

    def iteration_done(self, model: 'MultiLayerNetwork', iteration: int) -> None:
        if iteration % self.print_iterations == 0:
            logger.info(f"Score at iteration {iteration} is {model.score():.6f}")


class BestScoreIterationListener(IterationListener):
    """Feeds every score into a shared max accumulator."""

    def __init__(self, accumulator: 'MaxAccumulator'):
        self.accumulator = accumulator

    def iteration_done(self, model: 'MultiLayerNetwork', iteration: int) -> None:
        self.accumulator.add(model.score())
