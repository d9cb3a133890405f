"""Tests for ParameterAveragingTrainer."""

import os
import tempfile
import unittest

import torch

from dist_dl_train.config import TrainingConfig
from dist_dl_train.errors import ConfigurationError
from dist_dl_train.models.network import MultiLayerNetwork
from dist_dl_train.persistence.state_store import TrainingHistoryStore
from dist_dl_train.sync.parameter_averaging import HISTORY_NAME, ParameterAveragingTrainer
from dist_dl_train.task.training_task import DistributedTrainingTask
from dist_dl_train.updater.gradient_updater import UpdaterKind
from tests.utils import make_conf, make_dataset


class TestParameterAveragingTrainer(unittest.TestCase):
    """Test cases for parameter averaging rounds."""

    def setUp(self):
        """Set up a temporary directory."""
        self.tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_single_partition_matches_local_fit(self):
        """Test that one partition behaves like a local fit."""
        conf = make_conf(updater=UpdaterKind.NESTEROVS)
        data = make_dataset(num_examples=16)
        trainer = ParameterAveragingTrainer(conf, TrainingConfig(num_partitions=1, num_workers=1, shuffle=False))
        trainer.fit(data, num_rounds=1)

        local = MultiLayerNetwork(conf)
        local.init()
        local.fit(data)
        self.assertTrue(torch.allclose(trainer.get_network().params(), local.params(), atol=1e-6))
        self.assertEqual(trainer.get_network().get_updater(), local.get_updater())

    def test_identical_partitions_average_to_single_result(self):
        """Test averaging identical partitions."""
        conf = make_conf(updater=UpdaterKind.ADAM)
        one = make_dataset(num_examples=1)
        data = type(one).merge([one] * 4)
        trainer = ParameterAveragingTrainer(conf, TrainingConfig(num_partitions=4, num_workers=4))
        trainer.fit(data, num_rounds=1)

        local = MultiLayerNetwork(conf)
        local.init()
        local.fit(one)
        self.assertTrue(torch.allclose(trainer.get_network().params(), local.params(), atol=1e-6))
        m_avg = trainer.get_network().get_updater().layer_updaters[0].updater_for_variable['W'].m
        m_local = local.get_updater().layer_updaters[0].updater_for_variable['W'].m
        self.assertTrue(torch.allclose(m_avg, m_local, atol=1e-6))

    def test_training_improves_score(self):
        """Test that the score falls over rounds."""
        conf = make_conf(updater=UpdaterKind.SGD, layer_overrides={'learning_rate': 0.5})
        data = make_dataset(num_examples=128)
        trainer = ParameterAveragingTrainer(conf, TrainingConfig(num_partitions=4, num_workers=2, seed=3))
        scores = trainer.fit(data, num_rounds=25)
        self.assertEqual(len(scores), 25)
        self.assertLess(scores[-1], scores[0])
        self.assertEqual(trainer.rounds_completed, 25)
        self.assertGreaterEqual(trainer.best_score, max(scores))

    def test_more_partitions_than_examples(self):
        """Test rounds with empty partitions."""
        conf = make_conf()
        data = make_dataset(num_examples=2)
        trainer = ParameterAveragingTrainer(conf, TrainingConfig(num_partitions=5, num_workers=2))
        scores = trainer.fit(data, num_rounds=2)
        self.assertEqual(len(scores), 2)

    def test_all_partitions_empty_skips_round(self):
        """Test that a round with no results is skipped."""
        conf = make_conf()
        data = make_dataset(num_examples=4)
        empty = type(data)(data.features[:0], data.labels[:0])
        trainer = ParameterAveragingTrainer(conf, TrainingConfig(num_partitions=3))
        before = trainer.get_network().params()
        with self.assertLogs('dist_dl_train.sync.parameter_averaging', level='WARNING'):
            scores = trainer.fit(empty, num_rounds=2)
        self.assertEqual(scores, [])
        self.assertEqual(trainer.rounds_completed, 0)
        self.assertTrue(torch.equal(trainer.get_network().params(), before))

    def test_history_store_records_rounds(self):
        """Test that each round is recorded in the history store."""
        db_path = os.path.join(self.tmpdir.name, 'history.db')
        with TrainingHistoryStore(db_path) as store:
            trainer = ParameterAveragingTrainer(make_conf(), TrainingConfig(num_partitions=2), history_store=store)
            scores = trainer.fit(make_dataset(num_examples=16), num_rounds=3)
            self.assertEqual(store.versions(HISTORY_NAME), [0, 1, 2])
            version, payload = store.latest(HISTORY_NAME)
            self.assertEqual(version, 2)
            self.assertAlmostEqual(payload['score'], scores[-1])
            self.assertEqual(payload['num_results'], 2)

    def test_task_failure_propagates(self):
        """Test that task errors reach the caller."""
        trainer = ParameterAveragingTrainer(make_conf(), TrainingConfig(num_partitions=2))
        # Network sized for 4 inputs, data has 3
        with self.assertRaises(ConfigurationError):
            trainer.fit(make_dataset(num_examples=8, n_in=3), num_rounds=1)

    def test_broadcasts_destroyed_after_round(self):
        """Test that broadcasts are released after each round."""
        created = []
        original_init = DistributedTrainingTask.__init__

        def recording_init(task, conf_json, params, updater, best_score_acc):
            created.append((params, updater))
            original_init(task, conf_json, params, updater, best_score_acc)

        DistributedTrainingTask.__init__ = recording_init
        try:
            trainer = ParameterAveragingTrainer(make_conf(), TrainingConfig(num_partitions=2))
            trainer.fit(make_dataset(num_examples=8), num_rounds=2)
        finally:
            DistributedTrainingTask.__init__ = original_init
        self.assertEqual(len(created), 2)
        for params, updater in created:
            self.assertTrue(params.is_destroyed)
            self.assertTrue(updater.is_destroyed)

    def test_save_and_load(self):
        """Test checkpoint save and load."""
        conf = make_conf(updater=UpdaterKind.NESTEROVS)
        data = make_dataset(num_examples=16)
        trainer = ParameterAveragingTrainer(conf, TrainingConfig(num_partitions=2))
        trainer.fit(data, num_rounds=2)
        path = os.path.join(self.tmpdir.name, 'ckpt.pt')
        trainer.save(path)

        restored = ParameterAveragingTrainer(conf, TrainingConfig(num_partitions=2))
        restored.load(path)
        self.assertTrue(torch.equal(restored.get_network().params(), trainer.get_network().params()))
        self.assertEqual(restored.get_network().get_updater(), trainer.get_network().get_updater())
        self.assertEqual(restored.rounds_completed, 2)
        self.assertEqual(restored.best_score, trainer.best_score)

    def test_load_rejects_other_configuration(self):
        """Test that a checkpoint for another network is rejected."""
        trainer = ParameterAveragingTrainer(make_conf(), TrainingConfig())
        path = os.path.join(self.tmpdir.name, 'ckpt.pt')
        trainer.save(path)
        other = ParameterAveragingTrainer(make_conf(n_hidden=7), TrainingConfig())
        with self.assertRaises(ConfigurationError):
            other.load(path)


if __name__ == '__main__':
    unittest.main()
