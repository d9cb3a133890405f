"""Labelled example batches and partitioning for distributed training."""

from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import torch
from torch.utils.data import Dataset


class DataSet(Dataset):
    """
    A batch of examples: a features matrix and a labels matrix with one row
    per example.
    """

    def __init__(self, features: torch.Tensor, labels: torch.Tensor):
        """
        Args:
            features: Tensor of shape (num_examples, num_inputs)
            labels: Tensor of shape (num_examples, num_outcomes), one-hot for classification
        """
        if features.dim() != 2 or labels.dim() != 2:
            raise ValueError(
                f"Features and labels must be 2-D, got {tuple(features.shape)} and {tuple(labels.shape)}")
        if features.shape[0] != labels.shape[0]:
            raise ValueError(
                f"Features have {features.shape[0]} rows but labels have {labels.shape[0]}")
        self.features = features.float()
        self.labels = labels.float()

    def num_examples(self) -> int:
        return int(self.features.shape[0])

    def num_inputs(self) -> int:
        return int(self.features.shape[1])

    def num_outcomes(self) -> int:
        return int(self.labels.shape[1])

    def __len__(self) -> int:
        return self.num_examples()

    def __getitem__(self, idx: int) -> Tuple[torch.Tensor, torch.Tensor]:
        return self.features[idx], self.labels[idx]

    def label_counts(self) -> np.ndarray:
        """Number of examples per class (argmax of each label row)."""
        if self.num_examples() == 0:
            return np.zeros(self.num_outcomes(), dtype=np.int64)
        classes = self.labels.argmax(dim=1).cpu().numpy()
        return np.bincount(classes, minlength=self.num_outcomes())

    def as_list(self) -> List['DataSet']:
        """One single-example DataSet per row."""
        return [DataSet(self.features[i:i + 1], self.labels[i:i + 1]) for i in range(self.num_examples())]

    @staticmethod
    def merge(datasets: Sequence['DataSet']) -> 'DataSet':
        """
        Concatenate datasets row-wise, preserving order.

        Raises:
            ValueError: If ``datasets`` is empty or the column counts differ
        """
        datasets = list(datasets)
        if not datasets:
            raise ValueError("Cannot merge an empty list of datasets")
        try:
            features = torch.cat([d.features for d in datasets], dim=0)
            labels = torch.cat([d.labels for d in datasets], dim=0)
        except RuntimeError as e:
            raise ValueError(f"Datasets have incompatible shapes: {e}") from e
        return DataSet(features, labels)

    def __repr__(self) -> str:
        return f"DataSet(examples={self.num_examples()}, inputs={self.num_inputs()}, outcomes={self.num_outcomes()})"


def create_synthetic_dataset(
    num_examples: int = 512,
    num_inputs: int = 4,
    num_classes: int = 3,
    seed: Optional[int] = None
) -> DataSet:
    """
    Create a separable classification dataset for testing.

    Each class has a random centroid; examples are the centroid plus small
    Gaussian noise. Labels are one-hot.

    Args:
        num_examples: Number of examples to generate
        num_inputs: Number of features per example
        num_classes: Number of classes
        seed: Seed for the numpy generator

    Returns:
        DataSet instance
    """
    rng = np.random.default_rng(seed)
    centroids = rng.normal(0.0, 2.0, size=(num_classes, num_inputs))
    classes = rng.integers(0, num_classes, size=num_examples)
    features = centroids[classes] + rng.normal(0.0, 0.5, size=(num_examples, num_inputs))
    labels = np.eye(num_classes)[classes]
    return DataSet(
        torch.tensor(features, dtype=torch.float32).reshape(num_examples, num_inputs),
        torch.tensor(labels, dtype=torch.float32).reshape(num_examples, num_classes),
    )


def partition(
    records: Iterable[DataSet],
    num_partitions: int,
    shuffle: bool = True,
    seed: Optional[int] = None
) -> List[List[DataSet]]:
    """
    Split records into ``num_partitions`` contiguous chunks.

    Chunk sizes differ by at most one; when there are fewer records than
    partitions the trailing partitions are empty.
    """
    if num_partitions < 1:
        raise ValueError(f"num_partitions must be >= 1, got {num_partitions}")
    records = list(records)
    order = np.arange(len(records))
    if shuffle:
        order = np.random.default_rng(seed).permutation(len(records))
    return [[records[i] for i in chunk] for chunk in np.array_split(order, num_partitions)]
