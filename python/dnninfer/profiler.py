# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import sys
import time
from typing import List, Optional

import numpy as np

from . import log
from .comm import Communicator
from .config import Config

__all__ = ["PerfReport", "Profiler", "flops_per_sample"]


def flops_per_sample(layers: List[int]) -> float:
    """
    Floating-point operations of one forward pass through a chain of dense
    layers with widths ``layers``: ``2 * sum(layers[i-1] * layers[i])``.
    """
    return sum(2.0 * a * b for a, b in zip(layers[:-1], layers[1:]))


class PerfReport:
    def __init__(
        self,
        samples: int,
        batch_size: int,
        seconds: float,
        flops: float,
        num_threads: int,
        peak_tflops_per_thread: float,
    ):
        self.samples = samples
        self.batch_size = batch_size
        self.seconds = seconds
        self.flops = flops
        self.num_threads = num_threads
        self.peak_tflops_per_thread = peak_tflops_per_thread

    @property
    def tflops(self) -> float:
        if self.seconds <= 0:
            return 0.0
        return self.flops / self.seconds * 1e-12

    @property
    def theoretical_peak(self) -> float:
        """Peak TFLOPS of the threads in use."""
        return self.peak_tflops_per_thread * self.num_threads

    @property
    def peak_percent(self) -> float:
        if self.theoretical_peak <= 0:
            return 0.0
        return self.tflops * 100.0 / self.theoretical_peak

    def __str__(self) -> str:
        return (
            "Inference Performance ---------------\n"
            f"samples : {self.samples}\n"
            f"batch size : {self.batch_size}\n"
            f"Time : {self.seconds:.6f}\n"
            f"FLOPS : {self.flops:.6g}\n"
            f"TFLOPS : {self.tflops:.6f}\n"
            f"Peak : {self.peak_percent:.4f}\n"
            "-------------------------------------\n"
        )


class Profiler:
    """
    Throughput reporting for inference calls. Only the root rank prints.
    """

    def __init__(self, comm: Communicator = None, config: Config = None):
        self.comm = comm if comm is not None else Communicator()
        self.config = config if config is not None else Config.get_config()

    def report(
        self, samples: int, batch_size: int, seconds: float, flops: float
    ) -> PerfReport:
        perf = PerfReport(
            samples,
            batch_size,
            seconds,
            flops,
            self.config.num_threads,
            self.config.peak_tflops_per_thread,
        )
        log.DEBUG(
            f"inference: {samples} samples in {seconds:.6f} s, "
            f"{perf.tflops:.6f} TFLOPS"
        )
        if self.config.perf_report and self.comm.rank() == 0:
            sys.stderr.write(str(perf))
        return perf


def _random_setting(widths: List[int]):
    model = []
    for i in range(len(widths) - 1):
        last = i == len(widths) - 2
        model.append(
            {
                "layer": {
                    "type": "Linear" if last else "LinearGELU",
                    "in_features": widths[i],
                    "out_features": widths[i + 1],
                }
            }
        )
    return {"layers": list(widths), "model": model}


def main(argv: Optional[List[str]] = None):
    import argparse
    import os
    import tempfile

    from .comm import destroy_process_group, init_process_group
    from .data_type import DataType
    from .engine import InferenceEngine
    from .loader import NUM_SLOTS
    from .serialize import save_model

    parser = argparse.ArgumentParser(description="dnninfer throughput benchmark")
    parser.add_argument(
        "--model_dir",
        type=str,
        help="Model directory; a random model is generated when omitted",
    )
    parser.add_argument(
        "--widths",
        type=str,
        default="8,1600,800,400,8",
        help="Width schedule of the generated model",
    )
    parser.add_argument(
        "--samples", type=int, default=65536, help="Samples per model slot"
    )
    parser.add_argument(
        "--iter", type=int, default=10, help="Number of inference calls"
    )
    parser.add_argument(
        "--batch_size", type=int, default=None, help="Rows per tile"
    )
    parser.add_argument(
        "--dtype", type=str, default="fp32", help="Working type, fp32 or fp64"
    )
    args = parser.parse_args(argv)

    init_process_group(
        rank=int(os.environ.get("RANK", "0")),
        world_size=int(os.environ.get("WORLD_SIZE", "1")),
    )
    try:
        with tempfile.TemporaryDirectory() as tmp:
            model_dir = args.model_dir
            if model_dir is None:
                widths = [int(w) for w in args.widths.split(",")]
                rng = np.random.default_rng(0)
                params = [
                    (
                        rng.standard_normal((b, a)).astype(np.float32) / np.sqrt(a),
                        rng.standard_normal(b).astype(np.float32),
                    )
                    for a, b in zip(widths[:-1], widths[1:])
                ]
                save_model(
                    tmp,
                    _random_setting(widths),
                    {slot: params for slot in range(NUM_SLOTS)},
                )
                model_dir = tmp
            with InferenceEngine(
                dtype=DataType.from_name(args.dtype), batch_size=args.batch_size
            ) as engine:
                engine.load_models(model_dir)
                rng = np.random.default_rng(1)
                inputs = [
                    rng.standard_normal(args.samples * engine.input_dim).astype(
                        np.float32
                    )
                    for _ in range(NUM_SLOTS)
                ]
                outputs = [None] * NUM_SLOTS
                start = time.time()
                for _ in range(args.iter):
                    engine.infer([args.samples] * NUM_SLOTS, inputs, outputs)
                elapsed = time.time() - start
                sys.stderr.write(
                    f"End-to-end: {elapsed / args.iter:.6f} seconds/iter\n"
                )
    finally:
        destroy_process_group()


if __name__ == "__main__":
    main()
