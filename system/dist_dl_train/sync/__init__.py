"""Broadcast values, shared accumulators and the parameter averaging driver."""

from .accumulator import MaxAccumulator
from .broadcast import Broadcast

__all__ = ['Broadcast', 'MaxAccumulator']
