"""Per-partition training function run by the parameter averaging driver."""

import logging
from typing import Iterable, List, NamedTuple

import torch

from dist_dl_train.data.dataset import DataSet
from dist_dl_train.errors import ConfigurationError
from dist_dl_train.models.listeners import BestScoreIterationListener, ScoreIterationListener
from dist_dl_train.models.network import MultiLayerNetwork
from dist_dl_train.sync.accumulator import MaxAccumulator
from dist_dl_train.sync.broadcast import Broadcast
from dist_dl_train.updater.multilayer import MultiLayerUpdater

logger = logging.getLogger("dist_dl_train.task")


class TrainingResult(NamedTuple):
    """What one partition sends back to the driver."""
    parameters: torch.Tensor
    updater: MultiLayerUpdater
    score: float


class DistributedTrainingTask:
    """
    Trains a private copy of the network on one partition for a single step.

    Instances hold only the serialized configuration and broadcast handles, so
    the same task object can be called for every partition of a round,
    concurrently.
    """

    def __init__(self, conf_json: str, params: Broadcast, updater: Broadcast,
                 best_score_acc: MaxAccumulator):
        """
        Args:
            conf_json: Network configuration as produced by MultiLayerConfiguration.to_json()
            params: Broadcast of the driver's flat parameter vector
            updater: Broadcast of the driver's MultiLayerUpdater
            best_score_acc: Accumulator that receives every iteration's score

        Raises:
            ConfigurationError: If the updater broadcast holds no value
        """
        if updater.is_empty:
            raise ConfigurationError("Updater broadcast must hold an updater")
        self.conf_json = conf_json
        self.params = params
        self.updater = updater
        self.best_score_acc = best_score_acc

    def __call__(self, records: Iterable[DataSet]) -> List[TrainingResult]:
        """
        Fit one step on the merged partition.

        Returns:
            An empty list for an empty partition, otherwise a single TrainingResult
        """
        records = list(records)
        if not records:
            return []

        data = DataSet.merge(records)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Training on partition with {data.num_examples()} examples, "
                         f"label counts {data.label_counts().tolist()}")

        params = self.params.clone()
        updater = self.updater.clone()

        network = MultiLayerNetwork.from_json(self.conf_json)
        network.init()
        network.set_listeners(ScoreIterationListener(1), BestScoreIterationListener(self.best_score_acc))

        if params.numel() != network.num_params():
            raise ConfigurationError(
                f"Broadcast parameters have {params.numel()} values, network expects {network.num_params()}")

        network.set_parameters(params)
        network.set_updater(updater)
        network.fit(data)

        return [TrainingResult(network.params(), network.get_updater(), network.score())]
