"""Partition training tasks."""

from .training_task import DistributedTrainingTask, TrainingResult

__all__ = ['DistributedTrainingTask', 'TrainingResult']
