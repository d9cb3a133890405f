"""Tests for DistributedTrainingTask."""

import unittest

import torch

from dist_dl_train.errors import ConfigurationError
from dist_dl_train.models.network import MultiLayerNetwork
from dist_dl_train.sync.accumulator import MaxAccumulator
from dist_dl_train.sync.broadcast import Broadcast
from dist_dl_train.task.training_task import DistributedTrainingTask, TrainingResult
from dist_dl_train.updater.gradient_updater import UpdaterKind
from tests.utils import make_conf, make_dataset


class ExplodingBroadcast(Broadcast):
    """Fails the test if the task reads the value."""

    def __init__(self):
        super().__init__(None)

    @property
    def value(self):
        raise AssertionError("params broadcast must not be read")

    def clone(self):
        raise AssertionError("params broadcast must not be cloned")


class TestDistributedTrainingTask(unittest.TestCase):
    """Test cases for the per-partition training step."""

    def setUp(self):
        """Set up broadcasts for a fresh network."""
        self.conf = make_conf(updater=UpdaterKind.NESTEROVS)
        self.master = MultiLayerNetwork(self.conf)
        self.master.init()
        self.params = Broadcast(self.master.params())
        self.updater = Broadcast(self.master.get_updater())
        self.acc = MaxAccumulator()

    def _task(self, params=None):
        return DistributedTrainingTask(self.conf.to_json(), params or self.params, self.updater, self.acc)

    def test_missing_updater_rejected(self):
        """Test that an empty updater broadcast is rejected."""
        with self.assertRaises(ConfigurationError):
            DistributedTrainingTask(self.conf.to_json(), self.params, Broadcast(None), self.acc)

    def test_empty_partition(self):
        """Test that an empty partition yields no result."""
        task = self._task(params=ExplodingBroadcast())
        self.assertEqual(task([]), [])
        self.assertEqual(task(iter([])), [])

    def test_single_step_result(self):
        """Test the result of one training step."""
        records = make_dataset(num_examples=12).as_list()
        results = self._task()(records)
        self.assertEqual(len(results), 1)
        result = results[0]
        self.assertIsInstance(result, TrainingResult)
        self.assertEqual(result.parameters.shape, (self.master.num_params(),))
        self.assertFalse(torch.equal(result.parameters, self.master.params()))
        self.assertEqual(result.updater.num_layers, 2)
        self.assertIn('W', result.updater.layer_updaters[0].updater_for_variable)
        self.assertEqual(self.acc.value, result.score)

    def test_matches_local_fit(self):
        """Test that the task matches a local fit."""
        data = make_dataset(num_examples=12)
        result = self._task()(data.as_list())[0]

        local = MultiLayerNetwork(self.conf)
        local.init()
        local.fit(data)
        self.assertTrue(torch.allclose(result.parameters, local.params(), atol=1e-6))
        self.assertAlmostEqual(result.score, local.score(), places=5)

    def test_broadcast_not_mutated(self):
        """Test that the task leaves the broadcasts untouched."""
        before_params = self.params.value.clone()
        records = make_dataset(num_examples=8).as_list()
        task = self._task()
        task(records)
        task(records)
        self.assertTrue(torch.equal(self.params.value, before_params))
        self.assertEqual(self.updater.value.layer_updaters[0].updater_for_variable, {})

    def test_partitions_do_not_share_updater_state(self):
        """Test that partitions get independent updaters."""
        task = self._task()
        first = task(make_dataset(num_examples=8, seed=1).as_list())[0]
        second = task(make_dataset(num_examples=8, seed=2).as_list())[0]
        v1 = first.updater.layer_updaters[0].updater_for_variable['W'].v
        v2 = second.updater.layer_updaters[0].updater_for_variable['W'].v
        self.assertIsNot(v1, v2)
        self.assertFalse(torch.equal(v1, v2))

    def test_parameter_count_mismatch(self):
        """Test that a wrong-length parameter broadcast is rejected."""
        task = self._task(params=Broadcast(torch.zeros(10)))
        with self.assertRaises(ConfigurationError):
            task(make_dataset(num_examples=4).as_list())


if __name__ == '__main__':
    unittest.main()
