"""Tests for LayerUpdater and updater construction from layer configuration."""

import unittest

import torch

from dist_dl_train.errors import ConfigurationError
from dist_dl_train.models.conf import LayerConfiguration, NeuralNetConfiguration
from dist_dl_train.updater.base_updater import LayerUpdater, updater_from_layer_conf
from dist_dl_train.updater.gradient_updater import Adam, Nesterovs, Sgd, UpdaterKind
from dist_dl_train.updater.normalization import GradientNormalization
from tests.utils import FakeLayer


def _layer(mini_batch=False, use_regularization=False, use_schedules=False, **layer_kwargs):
    layer_conf = LayerConfiguration(n_in=1, n_out=2, **layer_kwargs)
    conf = NeuralNetConfiguration(layer=layer_conf, mini_batch=mini_batch,
                                  use_regularization=use_regularization, use_schedules=use_schedules)
    return FakeLayer(conf, {'W': torch.tensor([[2.0, -2.0]]), 'b': torch.tensor([[1.0, 1.0]])})


class TestLayerUpdater(unittest.TestCase):
    """Test cases for the per-layer update pipeline."""

    def test_sgd_step(self):
        """Test a plain SGD step on weights and bias."""
        layer = _layer(learning_rate=0.5)
        gradient = {'W': torch.tensor([[1.0, 2.0]]), 'b': torch.tensor([[4.0, 0.0]])}
        LayerUpdater().update(layer, gradient, 0, 1)
        self.assertTrue(torch.allclose(gradient['W'], torch.tensor([[0.5, 1.0]])))
        self.assertTrue(torch.allclose(gradient['b'], torch.tensor([[2.0, 0.0]])))

    def test_updaters_created_lazily_per_parameter(self):
        """Test that per-parameter updaters appear on first update and are reused."""
        layer = _layer(updater=UpdaterKind.ADAM, learning_rate=0.01)
        updater = LayerUpdater()
        self.assertEqual(updater.updater_for_variable, {})
        updater.update(layer, {'W': torch.ones(1, 2), 'b': torch.ones(1, 2)}, 0, 1)
        self.assertEqual(set(updater.updater_for_variable), {'W', 'b'})
        self.assertIsInstance(updater.updater_for_variable['W'], Adam)
        first = updater.updater_for_variable['W']
        updater.update(layer, {'W': torch.ones(1, 2), 'b': torch.ones(1, 2)}, 1, 1)
        self.assertIs(updater.updater_for_variable['W'], first)

    def test_mini_batch_divides(self):
        """Test that the step is divided by the mini-batch size."""
        layer = _layer(mini_batch=True, learning_rate=1.0)
        gradient = {'W': torch.tensor([[4.0, 8.0]])}
        LayerUpdater().update(layer, gradient, 0, 4)
        self.assertTrue(torch.allclose(gradient['W'], torch.tensor([[1.0, 2.0]])))

    def test_mini_batch_size_must_be_positive(self):
        """Test that a non-positive mini-batch size is rejected."""
        layer = _layer(mini_batch=True)
        with self.assertRaises(ConfigurationError):
            LayerUpdater().update(layer, {'W': torch.ones(1, 2)}, 0, 0)

    def test_regularization_skips_bias(self):
        """Test that L2 regularization touches weights only."""
        layer = _layer(use_regularization=True, learning_rate=1.0, l2=0.5, l1=0.1)
        gradient = {'W': torch.zeros(1, 2), 'b': torch.zeros(1, 2)}
        LayerUpdater().update(layer, gradient, 0, 1)
        # W = [2, -2]: l2 * W + l1 * sign(W)
        self.assertTrue(torch.allclose(gradient['W'], torch.tensor([[1.1, -1.1]])))
        self.assertTrue(torch.equal(gradient['b'], torch.zeros(1, 2)))

    def test_regularization_disabled_by_flag(self):
        """Test that regularization is off unless the network enables it."""
        layer = _layer(use_regularization=False, l2=0.5)
        gradient = {'W': torch.zeros(1, 2)}
        LayerUpdater().update(layer, gradient, 0, 1)
        self.assertTrue(torch.equal(gradient['W'], torch.zeros(1, 2)))

    def test_normalization_applied_before_updater(self):
        """Test that gradient clipping runs before the updater step."""
        layer = _layer(learning_rate=1.0,
                       gradient_normalization=GradientNormalization.CLIP_L2_PER_PARAM_TYPE,
                       gradient_normalization_threshold=2.0)
        gradient = {'W': torch.tensor([[3.0, 4.0]])}
        LayerUpdater().update(layer, gradient, 0, 1)
        self.assertTrue(torch.allclose(gradient['W'], torch.tensor([[1.2, 1.6]])))

    def test_learning_rate_schedule(self):
        """Test that a learning rate schedule entry takes effect at its iteration."""
        layer = _layer(use_schedules=True, learning_rate=1.0, learning_rate_schedule={1: 0.1})
        updater = LayerUpdater()
        gradient = {'W': torch.ones(1, 2)}
        updater.update(layer, gradient, 0, 1)
        self.assertTrue(torch.allclose(gradient['W'], torch.ones(1, 2)))

        gradient = {'W': torch.ones(1, 2)}
        updater.update(layer, gradient, 1, 1)
        self.assertAlmostEqual(layer.conf.layer.learning_rate, 0.1)
        self.assertAlmostEqual(updater.updater_for_variable['W'].learning_rate, 0.1)
        self.assertTrue(torch.allclose(gradient['W'], torch.full((1, 2), 0.1)))

    def test_momentum_schedule(self):
        """Test that a momentum schedule entry takes effect at its iteration."""
        layer = _layer(use_schedules=True, updater=UpdaterKind.NESTEROVS, momentum=0.5,
                       momentum_schedule={0: 0.9})
        updater = LayerUpdater()
        updater.update(layer, {'W': torch.ones(1, 2)}, 0, 1)
        self.assertAlmostEqual(layer.conf.layer.momentum, 0.9)
        self.assertAlmostEqual(updater.updater_for_variable['W'].momentum, 0.9)

    def test_schedules_ignored_when_disabled(self):
        """Test that schedules are ignored when the network disables them."""
        layer = _layer(use_schedules=False, learning_rate=1.0, learning_rate_schedule={0: 0.1})
        LayerUpdater().update(layer, {'W': torch.ones(1, 2)}, 0, 1)
        self.assertEqual(layer.conf.layer.learning_rate, 1.0)

    def test_clone_is_equal_and_independent(self):
        """Test that a cloned layer updater shares no state with its source."""
        layer = _layer(updater=UpdaterKind.NESTEROVS)
        updater = LayerUpdater()
        updater.update(layer, {'W': torch.ones(1, 2), 'b': torch.ones(1, 2)}, 0, 1)
        copy = updater.clone()
        self.assertIsInstance(copy, LayerUpdater)
        self.assertEqual(copy, updater)
        copy.update(layer, {'W': torch.ones(1, 2), 'b': torch.ones(1, 2)}, 1, 1)
        self.assertNotEqual(copy, updater)

    def test_updater_from_layer_conf(self):
        """Test building each updater kind from a layer configuration."""
        nesterovs = updater_from_layer_conf(LayerConfiguration(
            n_in=1, n_out=1, updater=UpdaterKind.NESTEROVS, learning_rate=0.2, momentum=0.7))
        self.assertIsInstance(nesterovs, Nesterovs)
        self.assertEqual(nesterovs.hyperparameters(), {'learning_rate': 0.2, 'momentum': 0.7})

        adam = updater_from_layer_conf(LayerConfiguration(
            n_in=1, n_out=1, updater=UpdaterKind.ADAM, adam_mean_decay=0.8, epsilon=1e-4))
        self.assertEqual(adam.beta1, 0.8)
        self.assertEqual(adam.epsilon, 1e-4)

        sgd = updater_from_layer_conf(LayerConfiguration(n_in=1, n_out=1, epsilon=1e-4))
        self.assertIsInstance(sgd, Sgd)


if __name__ == '__main__':
    unittest.main()
