"""Layer-wide gradient normalization and clipping.

All policies act on the full set of parameter gradients of one layer and modify
the tensors in place:

- RENORMALIZE_L2_PER_LAYER: divide every tensor by the layer L2 norm,
  sqrt(sum_i ||g_i||^2).
- RENORMALIZE_L2_PER_PARAM_TYPE: divide each tensor by its own L2 norm.
- CLIP_ELEMENTWISE_ABSOLUTE_VALUE: clamp every element to [-threshold, threshold].
- CLIP_L2_PER_LAYER: if the layer L2 norm exceeds threshold, scale every tensor
  by threshold / layer_l2.
- CLIP_L2_PER_PARAM_TYPE: per tensor, if its L2 norm exceeds threshold, scale
  it by threshold / l2.
"""

import math
from enum import Enum
from typing import Dict, Iterable, Optional

import torch

from dist_dl_train.errors import ConfigurationError


class GradientNormalization(Enum):
    """Gradient normalization/clipping applied to a layer before the updater runs."""
    NONE = 'none'
    RENORMALIZE_L2_PER_LAYER = 'renormalize_l2_per_layer'
    RENORMALIZE_L2_PER_PARAM_TYPE = 'renormalize_l2_per_param_type'
    CLIP_ELEMENTWISE_ABSOLUTE_VALUE = 'clip_elementwise_absolute_value'
    CLIP_L2_PER_LAYER = 'clip_l2_per_layer'
    CLIP_L2_PER_PARAM_TYPE = 'clip_l2_per_param_type'


_CLIPPING = (
    GradientNormalization.CLIP_ELEMENTWISE_ABSOLUTE_VALUE,
    GradientNormalization.CLIP_L2_PER_LAYER,
    GradientNormalization.CLIP_L2_PER_PARAM_TYPE,
)


def l2_norm(tensor: torch.Tensor) -> float:
    # float64 accumulation, independent of the tensor's dtype/device
    return math.sqrt(float(tensor.detach().to(dtype=torch.float64).pow(2).sum().item()))


def layer_l2_norm(tensors: Iterable[torch.Tensor]) -> float:
    """L2 norm of the concatenation of all tensors."""
    sum_squares = 0.0
    for g in tensors:
        l2 = l2_norm(g)
        sum_squares += l2 * l2
    return math.sqrt(sum_squares)


@torch.no_grad()
def normalize_gradients(gradients: Dict[str, torch.Tensor],
                        normalization: Optional[GradientNormalization],
                        threshold: float = 1.0) -> None:
    """
    Apply a normalization policy in place to one layer's gradients.

    Tensors with a zero norm are left untouched by the renormalize policies.

    Args:
        gradients: Mapping of parameter name to gradient tensor for one layer
        normalization: Policy to apply; None or NONE is a no-op
        threshold: Clipping threshold, ignored by the renormalize policies

    Raises:
        ConfigurationError: For an unrecognized policy or a negative clipping threshold
    """
    if normalization is None or normalization == GradientNormalization.NONE:
        return
    if not isinstance(normalization, GradientNormalization):
        raise ConfigurationError(
            f"Unknown (or not implemented) gradient normalization strategy: {normalization!r}")
    if normalization in _CLIPPING and threshold < 0:
        raise ConfigurationError(f"Gradient clipping threshold must be >= 0, got {threshold}")

    values = list(gradients.values())

    if normalization == GradientNormalization.RENORMALIZE_L2_PER_LAYER:
        layer_l2 = layer_l2_norm(values)
        if layer_l2 > 0:
            for g in values:
                g.div_(layer_l2)

    elif normalization == GradientNormalization.RENORMALIZE_L2_PER_PARAM_TYPE:
        for g in values:
            l2 = l2_norm(g)
            if l2 > 0:
                g.div_(l2)

    elif normalization == GradientNormalization.CLIP_ELEMENTWISE_ABSOLUTE_VALUE:
        for g in values:
            g.clamp_(min=-threshold, max=threshold)

    elif normalization == GradientNormalization.CLIP_L2_PER_LAYER:
        layer_l2 = layer_l2_norm(values)
        if layer_l2 > threshold:
            scaling_factor = threshold / layer_l2
            for g in values:
                g.mul_(scaling_factor)

    elif normalization == GradientNormalization.CLIP_L2_PER_PARAM_TYPE:
        for g in values:
            l2 = l2_norm(g)
            if l2 > threshold:
                g.mul_(threshold / l2)

    else:
        raise ConfigurationError(
            f"Unknown (or not implemented) gradient normalization strategy: {normalization}")
