# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import os
from typing import Mapping

from . import log

__all__ = ["Config"]

DEFAULT_BATCH_SIZE = 16384
DEFAULT_GELU_BLOCK_SIZE = 8192
# 3.3792 TFLOPS spread over 48 cores, two flops per fused multiply-add.
DEFAULT_PEAK_TFLOPS_PER_THREAD = 3.3792 / 48.0 * 2.0
GELU_BACKENDS = ("fast", "reference", "tiled")


def _env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    value = environ.get(key)
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        log.WARN(f"ignoring {key}={value!r}: not an integer")
        return default
    if parsed <= 0:
        return default
    return parsed


def _env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    value = environ.get(key)
    if value is None:
        return default
    try:
        parsed = float(value.strip())
    except ValueError:
        log.WARN(f"ignoring {key}={value!r}: not a number")
        return default
    if parsed <= 0:
        return default
    return parsed


class Config:
    """
    Runtime settings of the inference engine, read from the environment.

    Args:
        batch_size: Rows per tile (``DNN_BATCH_SIZE``).
        num_threads: Worker threads for elementwise kernels
            (``OMP_NUM_THREADS``, otherwise the CPU count).
        peak_tflops_per_thread: Theoretical peak used for the efficiency
            figure (``DNN_PEAK_TFLOPS_PER_THREAD``).
        gelu_backend: ``fast``, ``reference`` or ``tiled``
            (``DNN_GELU_BACKEND``).
        gelu_block_size: Elements a GELU worker processes per step; bounds
            the activation scratch space (``DNN_GELU_BLOCK_SIZE``).
        perf_report: Whether ``infer`` prints a throughput report
            (``DNN_PERF_REPORT``).
    """

    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        num_threads: int = 1,
        peak_tflops_per_thread: float = DEFAULT_PEAK_TFLOPS_PER_THREAD,
        gelu_backend: str = "fast",
        gelu_block_size: int = DEFAULT_GELU_BLOCK_SIZE,
        perf_report: bool = True,
    ):
        if batch_size <= 0:
            raise log.InvalidUsageError(
                f"batch_size must be positive, got {batch_size}"
            )
        if num_threads <= 0:
            raise log.InvalidUsageError(
                f"num_threads must be positive, got {num_threads}"
            )
        if gelu_backend not in GELU_BACKENDS:
            raise log.InvalidUsageError(
                f"unknown GELU backend {gelu_backend!r}, "
                f"expected one of {GELU_BACKENDS}"
            )
        if gelu_block_size <= 0:
            raise log.InvalidUsageError(
                f"gelu_block_size must be positive, got {gelu_block_size}"
            )
        self.batch_size = batch_size
        self.num_threads = num_threads
        self.peak_tflops_per_thread = peak_tflops_per_thread
        self.gelu_backend = gelu_backend
        self.gelu_block_size = gelu_block_size
        self.perf_report = perf_report

    def __repr__(self) -> str:
        return (
            f"Config(batch_size={self.batch_size}, "
            f"num_threads={self.num_threads}, "
            f"peak_tflops_per_thread={self.peak_tflops_per_thread}, "
            f"gelu_backend={self.gelu_backend!r}, "
            f"gelu_block_size={self.gelu_block_size}, "
            f"perf_report={self.perf_report})"
        )

    @staticmethod
    def from_env(environ: Mapping[str, str] = None) -> "Config":
        """
        Build a configuration from environment variables. Unset, unparsable
        or non-positive values fall back to the defaults.
        """
        if environ is None:
            environ = os.environ
        gelu_backend = environ.get("DNN_GELU_BACKEND", "fast").strip().lower()
        if gelu_backend not in GELU_BACKENDS:
            log.WARN(f"ignoring DNN_GELU_BACKEND={gelu_backend!r}")
            gelu_backend = "fast"
        return Config(
            batch_size=_env_int(environ, "DNN_BATCH_SIZE", DEFAULT_BATCH_SIZE),
            num_threads=_env_int(
                environ, "OMP_NUM_THREADS", os.cpu_count() or 1
            ),
            peak_tflops_per_thread=_env_float(
                environ,
                "DNN_PEAK_TFLOPS_PER_THREAD",
                DEFAULT_PEAK_TFLOPS_PER_THREAD,
            ),
            gelu_backend=gelu_backend,
            gelu_block_size=_env_int(
                environ, "DNN_GELU_BLOCK_SIZE", DEFAULT_GELU_BLOCK_SIZE
            ),
            perf_report=environ.get("DNN_PERF_REPORT", "1").strip() != "0",
        )

    @staticmethod
    def get_config() -> "Config":
        """
        Get the process-wide configuration, reading the environment on
        first use.
        """
        if ConfigState.config is None:
            ConfigState.config = Config.from_env()
        return ConfigState.config

    @staticmethod
    def set_config(config: "Config"):
        """
        Replace the process-wide configuration.
        """
        ConfigState.config = config

    @staticmethod
    def reset():
        """
        Drop the cached configuration.
        """
        ConfigState.config = None


class ConfigState:
    """
    The ConfigState class is used to store the process-wide configuration.
    """

    config: Config = None
