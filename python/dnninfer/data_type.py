# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import numpy
import torch
from . import log

__all__ = [
    "DataType",
    "fp32",
    "fp64",
    "FILE_DTYPE",
]

# Parameter files are always little-endian 32-bit floats.
FILE_DTYPE = numpy.dtype("<f4")

REGISTRY_DATA_TYPE = {
    "fp32": {"np": numpy.float32, "torch": torch.float32, "bytes": 4},
    "fp64": {"np": numpy.float64, "torch": torch.float64, "bytes": 8},
}


class MetaDataType(type):
    def __new__(cls, name, bases, attrs):
        new_class = super().__new__(cls, name, bases, attrs)
        if name in REGISTRY_DATA_TYPE:
            reg = REGISTRY_DATA_TYPE[name]
            new_class.to_numpy = staticmethod(lambda: reg["np"])
            new_class.to_torch = staticmethod(lambda: reg["torch"])
            new_class.element_size = staticmethod(lambda: reg["bytes"])
        return new_class

    def __repr__(cls):
        return cls.__name__


class DataType(metaclass=MetaDataType):
    """
    Represent the working element type of a model.
    """

    @staticmethod
    def from_numpy(np_type: numpy.dtype) -> "DataType":
        """
        Return the corresponding data type.

        Parameters:
            np_type (numpy.dtype): The numpy data type.

        Returns:
            DataType: The corresponding data type.

        Raises:
            InvalidUsageError: If there is no defined conversion from numpy
                data type to a working data type.
        """
        if not isinstance(np_type, numpy.dtype):
            raise log.InvalidUsageError(
                f"Expected a numpy data type, but got {type(np_type)}"
            )
        for type_name, reg in REGISTRY_DATA_TYPE.items():
            if reg["np"] == np_type:
                return DataType.from_name(type_name)
        raise log.InvalidUsageError(
            f"Undefined conversion from numpy data type {np_type}"
            f" to a working data type."
        )

    @staticmethod
    def from_torch(torch_type: torch.dtype) -> "DataType":
        """
        Return the corresponding data type.

        Parameters:
            torch_type (torch.dtype): The torch data type.

        Returns:
            DataType: The corresponding data type.

        Raises:
            InvalidUsageError: If there is no defined conversion.
        """
        for type_name, reg in REGISTRY_DATA_TYPE.items():
            if reg["torch"] == torch_type:
                return DataType.from_name(type_name)
        raise log.InvalidUsageError(
            f"Undefined conversion from torch data type {torch_type}"
            f" to a working data type."
        )

    @staticmethod
    def from_name(type_name: str) -> "DataType":
        """
        Return the corresponding data type.

        Parameters:
            type_name (str): The name of the data type.

        Returns:
            DataType: The corresponding data type.

        Raises:
            InvalidUsageError: If the data type is not defined.
        """
        if type_name not in REGISTRY_DATA_TYPE:
            raise log.InvalidUsageError(f"Undefined data type {type_name}")
        return globals()[type_name]

    @staticmethod
    def to_numpy() -> numpy.dtype:
        """
        Return the corresponding numpy data type.
        """
        ...

    @staticmethod
    def to_torch() -> torch.dtype:
        """
        Return the corresponding torch data type.
        """
        ...

    @staticmethod
    def element_size() -> int:
        """
        Return the size of the data type in bytes.
        """
        ...


class fp32(DataType):
    """32-bit floating point."""

    ...


class fp64(DataType):
    """64-bit floating point."""

    ...
