import time
from abc import ABC, abstractmethod

import numpy as np


class BaseLogger(ABC):
    """Records one value per ALS sweep together with the sweep number and the rank.

    The rank is stored next to every value since the rank of a CP
    decomposition grows while it is built.
    """
    def __init__(self):
        self.log_metrics = []
        self.log_iterations = []
        self.log_ranks = []
        self.prev_checkpoint_it = 0
        self.name = type(self).__name__

    @abstractmethod
    def _compute_metric(self, decomposer):
        pass

    def log(self, decomposer):
        self.log_metrics.append(self._compute_metric(decomposer))
        self.log_iterations.append(decomposer.current_iteration)
        self.log_ranks.append(decomposer.rank)

    @property
    def latest_log_metrics(self):
        return self.log_metrics[self.prev_checkpoint_it:]

    @property
    def latest_log_iterations(self):
        return self.log_iterations[self.prev_checkpoint_it:]

    @property
    def latest_log_ranks(self):
        return self.log_ranks[self.prev_checkpoint_it:]

    @staticmethod
    def _append_to_dataset(logger_group, name, values, dtype):
        """Append values to a resizable one dimensional HDF5 dataset, creating it if needed.

        Arguments
        ---------
        logger_group: h5py.Group
            Group that contains the dataset.
        name: str
            Name of the dataset.
        values: list
            Values to append.
        dtype: type
            Data type of the dataset.
        """
        values = np.asarray(values, dtype=dtype)
        if name not in logger_group:
            logger_group.create_dataset(name, shape=(0,), maxshape=(None,), dtype=dtype)

        dataset = logger_group[name]
        old_length = dataset.shape[0]
        dataset.resize(old_length + len(values), axis=0)
        dataset[old_length:] = values

    def write_to_hdf5_group(self, h5group):
        """Append the entries logged since the last write to ``h5group[self.name]``."""
        logger_group = h5group.require_group(self.name)
        self._append_to_dataset(logger_group, 'iterations', self.latest_log_iterations, int)
        self._append_to_dataset(logger_group, 'ranks', self.latest_log_ranks, int)
        self._append_to_dataset(logger_group, 'values', self.latest_log_metrics, float)
        self.prev_checkpoint_it = len(self.log_iterations)


class LossLogger(BaseLogger):
    def _compute_metric(self, decomposer):
        return decomposer.loss


class SSELogger(BaseLogger):
    def _compute_metric(self, decomposer):
        return decomposer.SSE


class RelativeErrorLogger(BaseLogger):
    """Logs the reconstruction error relative to the norm of the decomposed tensor."""
    def _compute_metric(self, decomposer):
        return np.sqrt(decomposer.SSE)/decomposer.X_norm


class ExplainedVarianceLogger(BaseLogger):
    def _compute_metric(self, decomposer):
        return decomposer.explained_variance


class Timer(BaseLogger):
    """Logs the processor time since the first logged sweep."""
    def __init__(self):
        super().__init__()
        self.initial_time = None

    def _compute_metric(self, decomposer):
        current_time = time.process_time()
        if self.initial_time is None:
            self.initial_time = current_time
        return current_time - self.initial_time
