from . import base, compression, convergence, metrics, utils
from .decomposition import CP_ALS, CP_DF_ALS, KruskalTensor

__version__ = '0.1.0'
