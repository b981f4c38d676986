"""
Bookkeeping shared by the iterative decomposers: sweep counting, loggers and checkpoints.
"""


from abc import ABC, abstractmethod

import h5py
import numpy as np

from . import decompositions


class BaseDecomposer(ABC):
    r"""Base class for iterative decomposers.

    Arguments:
    ----------
    max_its: int (optional, default=10000)
        Maximum number of sweeps for each fixed rank.
    loggers: list(Logger) (optional, default=None)
        Objects with a ``log(decomposer)`` method, called after every sweep,
        and a ``write_to_hdf5_group(group)`` method, called at every
        checkpoint. See ``cpkit.decomposition.logging.BaseLogger``.
    checkpoint_frequency: int (optional, default=None)
        A checkpoint is stored every ``checkpoint_frequency`` sweeps and at
        the end of every ALS run. If None or negative, only the end of every
        ALS run is checkpointed.
    checkpoint_path: str or Path (optional, default=None)
        HDF5 file for the checkpoints and logs. If None, nothing is stored.
    print_frequency: int (optional, default=None)
        How often convergence information is printed. None and negative
        values disable printing.
    """
    DecompositionType = decompositions.BaseDecomposedTensor

    @abstractmethod
    def __init__(
        self,
        max_its=10000,
        loggers=None,
        checkpoint_frequency=None,
        checkpoint_path=None,
        print_frequency=None,
    ):
        self.max_its = max_its
        self.checkpoint_frequency = -1 if checkpoint_frequency is None else checkpoint_frequency
        self.checkpoint_path = checkpoint_path
        self.print_frequency = -1 if print_frequency is None else print_frequency
        self.loggers = [] if loggers is None else loggers
        self.current_iteration = 0

    @property
    @abstractmethod
    def shape(self):
        """The length of every decomposed mode."""
        pass

    @property
    @abstractmethod
    def reconstructed_X(self):
        pass

    @property
    @abstractmethod
    def loss(self):
        pass

    @abstractmethod
    def _check_valid_components(self, decomposition):
        pass

    def set_target(self, X):
        """Set the tensor that the decomposition is fitted to."""
        self.X = X
        self.X_norm = np.linalg.norm(X)

    @property
    def SSE(self):
        """Sum Squared Error"""
        return np.linalg.norm(self.X - self.reconstructed_X)**2

    @property
    def MSE(self):
        """Mean Squared Error"""
        return self.SSE/np.prod(self.shape)

    @property
    def RMSE(self):
        """Root Mean Squared Error"""
        return np.sqrt(self.MSE)

    @property
    def explained_variance(self):
        return 1 - self.SSE/self.X_norm**2

    @property
    def _checkpointing(self):
        return self.checkpoint_path is not None

    @staticmethod
    def _checkpoint_name(iteration):
        return f'checkpoint_{iteration:05d}'

    def store_checkpoint(self):
        """Store the decomposition after ``current_iteration`` sweeps and the new log entries.

        Does nothing if that checkpoint is already stored.
        """
        with h5py.File(self.checkpoint_path, 'a') as h5:
            group_name = self._checkpoint_name(self.current_iteration)
            if group_name in h5:
                return

            checkpoint_its = list(h5.attrs.get('checkpoint_its', []))
            h5.attrs['checkpoint_its'] = checkpoint_its + [self.current_iteration]
            h5.attrs['final_iteration'] = self.current_iteration
            h5.attrs['decomposition_type'] = type(self).__name__

            checkpoint_group = h5.create_group(group_name)
            self.decomposition.store_in_hdf5_group(checkpoint_group)

            for logger in self.loggers:
                logger.write_to_hdf5_group(h5)

    def load_checkpoint(self, checkpoint_path, load_it=None):
        """Continue from the checkpoint stored after ``load_it`` sweeps.

        If ``load_it=None``, then the latest checkpoint is used.
        """
        with h5py.File(checkpoint_path, 'r') as h5:
            if 'final_iteration' not in h5.attrs:
                raise ValueError(f'There are no checkpoints in {checkpoint_path}')

            if load_it is None:
                load_it = h5.attrs['final_iteration']
            group_name = self._checkpoint_name(load_it)
            if group_name not in h5:
                raise ValueError(f'There is no checkpoint {group_name} in {checkpoint_path}')

            decomposition = self.DecompositionType.load_from_hdf5_group(h5[group_name])

        self._check_valid_components(decomposition)
        self.current_iteration = int(load_it)
        self.decomposition = decomposition

    def _after_sweep(self):
        """Log the sweep, count it and store a checkpoint if one is due."""
        for logger in self.loggers:
            logger.log(self)
        self.current_iteration += 1

        if (
            self._checkpointing
            and self.checkpoint_frequency > 0
            and self.current_iteration % self.checkpoint_frequency == 0
        ):
            self.store_checkpoint()
