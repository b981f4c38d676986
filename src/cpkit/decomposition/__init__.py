from .cp import BaseCP, CP_ALS
from .cp_df import CP_DF_ALS
from .decompositions import KruskalTensor
