"""Exception types raised by the training core.

Both are fatal: the core raises them immediately and never retries. Retrying a
failed partition is left to whatever runs the tasks.
"""


class DistDLTrainError(Exception):
    """Base class for all errors raised by dist_dl_train."""


class ConfigurationError(DistDLTrainError, ValueError):
    """Invalid or inconsistent configuration.

    Raised for a missing broadcast updater, a parameter count that does not
    match the network, and unknown normalization or updater kinds.
    """


class AggregationError(DistDLTrainError, RuntimeError):
    """Updater state that cannot be combined, e.g. two different updater kinds."""
