"""Datasets and partitioning for distributed training."""

from .dataset import DataSet, create_synthetic_dataset, partition

__all__ = ['DataSet', 'create_synthetic_dataset', 'partition']
