# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

__version__ = "0.1.0"


def version():
    """Returns the version of dnninfer."""
    return __version__


from .init import init
from .config import Config
from .comm import Communicator, init_process_group, destroy_process_group
from .tensor import Tensor
from .layer import Layer, LayerKind, linear, linear_gelu
from .loader import NUM_SLOTS, ModelDescription
from .engine import InferenceEngine
from .serialize import save_model
from .profiler import PerfReport, Profiler
from .activation import *
from .data_type import *
from .error import *
