# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import numpy as np
from typing import List, Sequence

from . import log
from .data_type import DataType

__all__ = ["Tensor"]


class Tensor:
    def __init__(self, shape: Sequence[int], buffer: np.ndarray, offset: int = 0):
        """
        A non-owning 2-D row-major view over a caller-owned buffer.
        Args:
            shape: ``(rows, cols)`` of the view.
            buffer: Contiguous numpy array holding the elements.
            offset: Index of the first element of the view in ``buffer``.
        """
        if len(shape) != 2:
            raise log.InvalidUsageError(
                f"Tensor view must be 2-D, got shape {list(shape)}"
            )
        rows, cols = int(shape[0]), int(shape[1])
        if rows < 0 or cols < 0 or offset < 0:
            raise log.InvalidUsageError(
                f"invalid view shape {[rows, cols]} at offset {offset}"
            )
        if not buffer.flags["C_CONTIGUOUS"]:
            raise log.InvalidUsageError("buffer is not contiguous in memory")
        if offset + rows * cols > buffer.size:
            raise log.InvalidUsageError(
                f"view of {rows}x{cols} at offset {offset} exceeds buffer "
                f"of {buffer.size} elements"
            )
        self._shape = [rows, cols]
        self._buffer = buffer.reshape(-1)
        self._offset = offset

    def __repr__(self) -> str:
        return f"Tensor(shape={self._shape}, dtype={self.dtype().__name__})"

    def shape(self) -> List[int]:
        """
        Returns the shape of the view.
        """
        return list(self._shape)

    def dim(self, axis: int) -> int:
        """
        Returns the extent of the view along ``axis``.
        """
        return self._shape[axis]

    def nelems(self) -> int:
        """
        Returns the number of elements in the view.
        """
        return self._shape[0] * self._shape[1]

    def dtype(self) -> DataType:
        """
        Returns the element type of the underlying buffer.
        """
        return DataType.from_numpy(self._buffer.dtype)

    def data_ptr(self) -> int:
        """
        Returns the address of the first element of the view.
        """
        return self._buffer.ctypes.data + self._offset * self._buffer.itemsize

    def to_numpy(self) -> np.ndarray:
        """
        Returns a ``(rows, cols)`` numpy view sharing memory with the buffer.
        """
        start = self._offset
        return self._buffer[start : start + self.nelems()].reshape(self._shape)
