"""Parameter naming shared by layers, the network and the updaters."""

from typing import Tuple

WEIGHT_KEY = 'W'
BIAS_KEY = 'b'
PARAM_KEYS: Tuple[str, ...] = (WEIGHT_KEY, BIAS_KEY)


def network_param_key(layer_index: int, param: str) -> str:
    """Network-level gradient key, e.g. ``network_param_key(0, 'W') == '0_W'``."""
    return f"{layer_index}_{param}"


def split_network_param_key(key: str) -> Tuple[int, str]:
    """Inverse of network_param_key."""
    index, sep, param = key.partition('_')
    if not sep or not index.isdigit() or not param:
        raise ValueError(f"Not a network parameter key: {key!r}")
    return int(index), param
