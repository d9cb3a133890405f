"""Network configuration, layers and the multi-layer network.

``MultiLayerNetwork`` lives in ``dist_dl_train.models.network``; it is not
re-exported here because the updater package depends on this package's
parameter naming.
"""

from .conf import LayerConfiguration, NeuralNetConfiguration, MultiLayerConfiguration
from .params import WEIGHT_KEY, BIAS_KEY

__all__ = ['LayerConfiguration', 'NeuralNetConfiguration', 'MultiLayerConfiguration', 'WEIGHT_KEY', 'BIAS_KEY']
