# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
GELU kernels.

Two numerically distinct forms are provided. The reference form uses the
platform hyperbolic tangent. The fast form replaces ``tanh(z)`` with
``1 - 2 / (exp(2z) + 1)`` and saturates to exactly +-1 beyond ``|z| > 8`` so
that the exponential never overflows. Backends apply a form in place on a
contiguous buffer, splitting the elements over a thread pool.
"""

import math
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Tuple

import numpy as np

from . import log

__all__ = [
    "gelu_reference",
    "gelu_fast",
    "tanh_exp",
    "ActivationBackend",
    "FastGelu",
    "ReferenceGelu",
    "TiledGelu",
    "get_backend",
]

SQRT_2_OVER_PI = math.sqrt(2.0 / math.pi)
GELU_COEFF = 0.044715
TANH_SATURATION = 8.0
DEFAULT_BLOCK_SIZE = 8192

_CONSTANTS: Dict[np.dtype, Tuple] = {}


def _constants(dtype: np.dtype):
    consts = _CONSTANTS.get(dtype)
    if consts is None:
        t = dtype.type
        consts = (
            t(SQRT_2_OVER_PI),
            t(GELU_COEFF),
            t(0.5),
            t(1.0),
            t(2.0),
            t(3.0),
            t(TANH_SATURATION),
        )
        _CONSTANTS[dtype] = consts
    return consts


def _tanh_exp_kernel(z: np.ndarray, t: np.ndarray, mask: np.ndarray) -> None:
    # t = tanh(z) via exp; z is left unchanged.
    _, _, _, one, two, _, sat = _constants(z.dtype)
    np.clip(z, -sat, sat, out=t)
    np.multiply(t, two, out=t)
    np.exp(t, out=t)
    np.add(t, one, out=t)
    np.divide(two, t, out=t)
    np.subtract(one, t, out=t)
    np.greater(z, sat, out=mask)
    np.copyto(t, one, where=mask)
    np.less(z, -sat, out=mask)
    np.copyto(t, -one, where=mask)


def _gelu_fast_kernel(
    x: np.ndarray, z: np.ndarray, t: np.ndarray, mask: np.ndarray
) -> None:
    c1, c2, half, one, _, _, _ = _constants(x.dtype)
    np.multiply(x, c2, out=z)
    np.multiply(z, x, out=z)
    np.multiply(z, x, out=z)
    np.add(z, x, out=z)
    np.multiply(z, c1, out=z)
    _tanh_exp_kernel(z, t, mask)
    np.add(t, one, out=t)
    np.multiply(x, half, out=z)
    np.multiply(z, t, out=x)


def _gelu_reference_kernel(
    x: np.ndarray, z: np.ndarray, t: np.ndarray, mask: np.ndarray = None
) -> None:
    c1, c2, half, one, _, three, _ = _constants(x.dtype)
    np.power(x, three, out=z)
    np.multiply(z, c2, out=z)
    np.add(z, x, out=z)
    np.multiply(z, c1, out=z)
    np.tanh(z, out=z)
    np.add(z, one, out=z)
    np.multiply(x, half, out=t)
    np.multiply(t, z, out=x)


def _as_float_array(x) -> np.ndarray:
    x = np.asarray(x)
    return np.array(x, dtype=np.result_type(x.dtype, np.float32), order="C")


def tanh_exp(z) -> np.ndarray:
    """
    Saturating ``tanh`` computed as ``1 - 2 / (exp(2z) + 1)``; returns
    exactly 1 for ``z > 8`` and -1 for ``z < -8``.
    """
    z = _as_float_array(z)
    t = np.empty_like(z)
    _tanh_exp_kernel(z, t, np.empty(z.shape, dtype=bool))
    return t


def gelu_reference(x) -> np.ndarray:
    """
    ``0.5 x (1 + tanh(sqrt(2/pi) (x + 0.044715 x^3)))`` with the platform
    ``tanh``. Returns a new array.
    """
    y = _as_float_array(x)
    _gelu_reference_kernel(y, np.empty_like(y), np.empty_like(y))
    return y


def gelu_fast(x) -> np.ndarray:
    """
    GELU with the saturating exponential ``tanh``. Returns a new array.
    """
    y = _as_float_array(x)
    _gelu_fast_kernel(
        y, np.empty_like(y), np.empty_like(y), np.empty(y.shape, dtype=bool)
    )
    return y


class ActivationBackend:
    """
    Elementwise in-place transform over a contiguous buffer, executed as a
    parallel-for over contiguous element ranges. Each worker walks its range
    in blocks of ``block_size`` elements, so the scratch space is
    ``num_threads * block_size`` elements per row whatever the buffer size.

    Args:
        num_threads: Number of worker threads. 1 runs inline.
        block_size: Elements a worker processes per step.
    """

    name = None
    # Scratch rows per worker.
    scratch_rows = 2

    def __init__(self, num_threads: int = 1, block_size: int = DEFAULT_BLOCK_SIZE):
        if num_threads <= 0:
            raise log.InvalidUsageError(
                f"num_threads must be positive, got {num_threads}"
            )
        if block_size <= 0:
            raise log.InvalidUsageError(
                f"block_size must be positive, got {block_size}"
            )
        self.num_threads = num_threads
        self.block_size = block_size
        self._pool = None
        self._local = None
        self._mask = None

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(num_threads={self.num_threads}, "
            f"block_size={self.block_size})"
        )

    def __call__(self, data: np.ndarray) -> None:
        if not data.flags["C_CONTIGUOUS"] or not data.flags["WRITEABLE"]:
            raise log.InvalidUsageError(
                "activation buffer must be a writeable contiguous array"
            )
        flat = data.reshape(-1)
        if flat.size == 0:
            return
        self._reserve(flat.dtype)
        ranges = self._partition(flat.size)
        if len(ranges) == 1:
            self._run_worker(0, flat, *ranges[0])
            return
        pool = self._get_pool()
        futures = [
            pool.submit(self._run_worker, tid, flat, s, e)
            for tid, (s, e) in enumerate(ranges)
        ]
        for future in futures:
            future.result()

    def workspace_nbytes(self) -> int:
        """Bytes held by the reserved scratch space."""
        if self._local is None:
            return 0
        return self._local.nbytes + self._mask.nbytes

    def close(self) -> None:
        """
        Shut down the worker threads and drop the workspaces.
        """
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        self._local = None
        self._mask = None

    def _get_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.num_threads,
                thread_name_prefix=f"dnninfer-{self.name}",
            )
        return self._pool

    def _reserve(self, dtype: np.dtype) -> None:
        if self._local is None or self._local.dtype != dtype:
            self._local = np.empty(
                (self.num_threads, self.scratch_rows, self.block_size),
                dtype=dtype,
            )
            self._mask = np.empty((self.num_threads, self.block_size), dtype=bool)

    def _partition(self, n: int) -> List[Tuple[int, int]]:
        chunks = min(self.num_threads, -(-n // self.block_size))
        return [(i * n // chunks, (i + 1) * n // chunks) for i in range(chunks)]

    def _run_worker(self, tid: int, flat: np.ndarray, start: int, end: int) -> None:
        scratch = self._local[tid]
        mask = self._mask[tid]
        for bs in range(start, end, self.block_size):
            be = min(end, bs + self.block_size)
            self._block(flat[bs:be], scratch[:, : be - bs], mask[: be - bs])

    def _block(self, x: np.ndarray, scratch: np.ndarray, mask: np.ndarray) -> None:
        raise NotImplementedError


class FastGelu(ActivationBackend):
    """Production GELU path using the saturating exponential tanh."""

    name = "fast"

    def _block(self, x, scratch, mask) -> None:
        _gelu_fast_kernel(x, scratch[0], scratch[1], mask)


class ReferenceGelu(ActivationBackend):
    """GELU with the platform tanh, kept for verification."""

    name = "reference"

    def _block(self, x, scratch, mask) -> None:
        _gelu_reference_kernel(x, scratch[0], scratch[1])


class TiledGelu(ActivationBackend):
    """
    Offload-style GELU. The elements are split evenly across all workers;
    each worker copies its blocks into a local buffer, applies the reference
    formula there and copies the block back. The result is the same as
    ReferenceGelu, only the data movement differs.
    """

    name = "tiled"
    # Staged block plus two scratch rows.
    scratch_rows = 3

    def _partition(self, n: int) -> List[Tuple[int, int]]:
        workers = self.num_threads
        ranges = [(i * n // workers, (i + 1) * n // workers) for i in range(workers)]
        return [(s, e) for s, e in ranges if e > s]

    def _block(self, x, scratch, mask) -> None:
        ldm, z, t = scratch
        np.copyto(ldm, x)
        _gelu_reference_kernel(ldm, z, t)
        np.copyto(x, ldm)


REGISTRY_BACKEND = {
    FastGelu.name: FastGelu,
    ReferenceGelu.name: ReferenceGelu,
    TiledGelu.name: TiledGelu,
}


def get_backend(
    name: str, num_threads: int = 1, block_size: int = DEFAULT_BLOCK_SIZE
) -> ActivationBackend:
    """
    Create an activation backend by name (``fast``, ``reference`` or
    ``tiled``).
    """
    cls = REGISTRY_BACKEND.get(name)
    if cls is None:
        raise log.InvalidUsageError(
            f"unknown activation backend {name!r}, "
            f"expected one of {sorted(REGISTRY_BACKEND)}"
        )
    return cls(num_threads=num_threads, block_size=block_size)
