"""Parameter averaging driver: broadcast, train partitions in parallel, reduce."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

import torch

from dist_dl_train.config import TrainingConfig
from dist_dl_train.data.dataset import DataSet, partition
from dist_dl_train.errors import ConfigurationError
from dist_dl_train.models.conf import MultiLayerConfiguration
from dist_dl_train.models.network import MultiLayerNetwork
from dist_dl_train.persistence.state_store import TrainingHistoryStore
from dist_dl_train.sync.accumulator import MaxAccumulator
from dist_dl_train.sync.broadcast import Broadcast
from dist_dl_train.task.training_task import DistributedTrainingTask, TrainingResult
from dist_dl_train.updater.aggregator import MultiLayerUpdaterAggregator
from dist_dl_train.updater.gradient_updater import UpdaterKind, create_updater
from dist_dl_train.updater.multilayer import MultiLayerUpdater

logger = logging.getLogger("dist_dl_train.sync.parameter_averaging")

HISTORY_NAME = "parameter_averaging"


class ParameterAveragingTrainer:
    """
    Synchronous data-parallel training by parameter averaging.

    Every round the master parameters and updater state are broadcast, each
    partition trains a private copy for one step, and the driver replaces its
    state with the average of the partition results.
    """

    def __init__(self, conf: MultiLayerConfiguration, training_config: Optional[TrainingConfig] = None,
                 history_store: Optional[TrainingHistoryStore] = None):
        """
        Args:
            conf: Network configuration shared by the master and every task
            training_config: Partitioning and worker pool settings
            history_store: Optional store that receives one record per round
        """
        self.conf = conf
        self.training_config = training_config or TrainingConfig()
        self.history_store = history_store
        self.conf_json = conf.to_json()

        self.network = MultiLayerNetwork(conf)
        self.network.init()
        self.best_score_acc = MaxAccumulator()
        self.rounds_completed = 0
        self.last_score: Optional[float] = None
        self.lock = threading.Lock()

    def get_network(self) -> MultiLayerNetwork:
        return self.network

    @property
    def best_score(self) -> float:
        """Highest score reported by any task iteration so far."""
        return self.best_score_acc.value

    def fit(self, dataset: DataSet, num_rounds: Optional[int] = None) -> List[float]:
        """
        Run averaging rounds over ``dataset``.

        Args:
            dataset: Full training set; split into single-example records and partitioned each round
            num_rounds: Number of rounds (defaults to the training config's num_rounds)

        Returns:
            The averaged score of every round that ran
        """
        num_rounds = self.training_config.num_rounds if num_rounds is None else num_rounds
        records = dataset.as_list()
        scores = []
        for _ in range(num_rounds):
            score = self.fit_round(records)
            if score is not None:
                scores.append(score)
        return scores

    def fit_round(self, records: List[DataSet]) -> Optional[float]:
        """
        One broadcast/train/reduce round.

        Returns:
            The averaged score, or None if every partition was empty
        """
        cfg = self.training_config
        with self.lock:
            round_index = self.rounds_completed
            partitions = partition(records, cfg.num_partitions, shuffle=cfg.shuffle,
                                   seed=cfg.seed + round_index)
            if not any(partitions):
                logger.warning(f"Round {round_index}: all {len(partitions)} partitions are empty, skipping")
                return None

            params = Broadcast(self.network.params())
            updater = Broadcast(self.network.get_updater())
            try:
                task = DistributedTrainingTask(self.conf_json, params, updater, self.best_score_acc)
                with ThreadPoolExecutor(max_workers=cfg.num_workers) as pool:
                    results = [result for results in pool.map(task, partitions) for result in results]
            finally:
                params.destroy()
                updater.destroy()

            score = self._apply_results(results)
            self.rounds_completed += 1
            self.last_score = score

            logger.info(f"Round {round_index}: averaged {len(results)} partition results, score={score:.6f}")
            if self.history_store is not None:
                self.history_store.record(HISTORY_NAME, round_index, {
                    'round': round_index,
                    'score': score,
                    'best_score': self.best_score,
                    'num_results': len(results),
                    'num_examples': len(records),
                })
            return score

    def _apply_results(self, results: List[TrainingResult]) -> float:
        """Average parameters and scores, combine updaters, install on the master network."""
        averaged = torch.stack([r.parameters for r in results]).mean(dim=0)

        aggregator = MultiLayerUpdaterAggregator()
        for result in results:
            aggregator.aggregate(result.updater)

        self.network.set_parameters(averaged)
        self.network.set_updater(aggregator.get_updater())
        return sum(r.score for r in results) / len(results)

    # --- Persistence helpers ---
    def save(self, path: str) -> None:
        """Write configuration, parameters and updater state to a torch checkpoint."""
        with self.lock:
            data = {
                'conf': self.conf_json,
                'params': self.network.params().cpu(),
                'updater': _updater_to_state(self.network.get_updater()),
                'rounds_completed': self.rounds_completed,
                'best_score': self.best_score,
            }
            torch.save(data, path)
        logger.info(f"Saved checkpoint after {self.rounds_completed} rounds to {path}")

    def load(self, path: str) -> None:
        """
        Restore a checkpoint written by ``save``.

        Raises:
            ConfigurationError: If the checkpoint was written for a different network configuration
        """
        data = torch.load(path, map_location='cpu')
        if data.get('conf') != self.conf_json:
            raise ConfigurationError(f"Checkpoint {path} was written for a different network configuration")
        with self.lock:
            self.network.set_parameters(data['params'])
            self.network.set_updater(_updater_from_state(data['updater']))
            self.rounds_completed = int(data.get('rounds_completed', 0))
            self.best_score_acc.add(float(data.get('best_score', float('-inf'))))
        logger.info(f"Loaded checkpoint from {path} ({self.rounds_completed} rounds)")


def _updater_to_state(updater: MultiLayerUpdater) -> List[Dict[str, Dict[str, Any]]]:
    """Plain nested containers of strings, floats and tensors, loadable with weights_only."""
    layers = []
    for layer_updater in updater.layer_updaters:
        layers.append({
            name: {
                'kind': gradient_updater.kind.value,
                'hyperparameters': gradient_updater.hyperparameters(),
                'state': gradient_updater.state(),
            }
            for name, gradient_updater in layer_updater.updater_for_variable.items()
        })
    return layers


def _updater_from_state(layers: List[Dict[str, Dict[str, Any]]]) -> MultiLayerUpdater:
    updater = MultiLayerUpdater(num_layers=len(layers))
    for layer_updater, variables in zip(updater.layer_updaters, layers):
        for name, entry in variables.items():
            gradient_updater = create_updater(UpdaterKind(entry['kind']), **entry['hyperparameters'])
            gradient_updater.set_state(entry['state'])
            layer_updater.updater_for_variable[name] = gradient_updater
    return updater
