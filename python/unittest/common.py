# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import contextlib
import functools
import multiprocessing
import os
import tempfile

import numpy as np
import pytest
import dnninfer


def pytest_dnninfer(need_torch: bool = False, process_group: bool = False):
    """
    Decorator for dnninfer unit tests. Resets process state and, with
    `process_group`, runs the test inside a single-process group.
    """

    def decorator(test_func):
        if need_torch:
            try:
                import torch
            except ImportError:
                return pytest.mark.skip(reason="torch is not installed")(
                    test_func
                )

        @functools.wraps(test_func)
        def wrapper(*args, **kwargs):
            dnninfer.init()
            if not process_group:
                return test_func(*args, **kwargs)
            with single_process_group():
                return test_func(*args, **kwargs)

        return wrapper

    return decorator


@contextlib.contextmanager
def single_process_group():
    dnninfer.init_process_group(rank=0, world_size=1)
    try:
        yield
    finally:
        dnninfer.destroy_process_group()


def _rank_main(target, rank, world_size, store, queue, args):
    dnninfer.init_process_group(
        rank=rank, world_size=world_size, init_method=f"file://{store}"
    )
    try:
        result = target(rank, *args)
    except dnninfer.BaseError as e:
        result = e
    except Exception as e:
        queue.put((rank, RuntimeError(repr(e))))
        raise
    finally:
        dnninfer.destroy_process_group()
    queue.put((rank, result))


def run_ranks(target, world_size: int, *args, timeout: float = 300):
    """
    Run `target(rank, *args)` on `world_size` spawned processes sharing one
    process group. Returns the per-rank results; dnninfer errors raised by
    a rank are returned as values.
    """
    ctx = multiprocessing.get_context("spawn")
    store = os.path.join(tempfile.mkdtemp(prefix="dnninfer_test_"), "store")
    queue = ctx.Queue()
    processes = []
    for rank in range(world_size):
        process = ctx.Process(
            target=_rank_main,
            args=(target, rank, world_size, store, queue, args),
        )
        process.start()
        processes.append(process)
    results = {}
    for _ in range(world_size):
        rank, result = queue.get(timeout=timeout)
        results[rank] = result
    for process in processes:
        process.join(timeout)
        assert process.exitcode == 0
    return [results[rank] for rank in range(world_size)]


def make_setting(widths, kinds=None):
    """
    Model description for a chain of `widths`; all layers but the last
    are LinearGELU unless `kinds` is given.
    """
    if kinds is None:
        kinds = ["LinearGELU"] * (len(widths) - 2) + ["Linear"]
    return {
        "layers": list(widths),
        "model": [
            {
                "layer": {
                    "type": kind,
                    "in_features": widths[i],
                    "out_features": widths[i + 1],
                }
            }
            for i, kind in enumerate(kinds)
        ],
    }


def random_parameters(widths, seed=0):
    rng = np.random.default_rng(seed)
    return [
        (
            rng.standard_normal((b, a)).astype(np.float32),
            rng.standard_normal(b).astype(np.float32),
        )
        for a, b in zip(widths[:-1], widths[1:])
    ]


def make_model(directory, widths, kinds=None, seed=0):
    """
    Write a three-slot model with different random parameters per slot.
    Returns the parameters of each slot.
    """
    params = {
        slot: random_parameters(widths, seed + slot)
        for slot in range(dnninfer.NUM_SLOTS)
    }
    dnninfer.save_model(str(directory), make_setting(widths, kinds), params)
    return params


def make_engine(model_dir, batch_size, dtype=dnninfer.fp32, backend="fast"):
    config = dnninfer.Config(
        batch_size=batch_size,
        num_threads=2,
        gelu_backend=backend,
        perf_report=False,
    )
    engine = dnninfer.InferenceEngine(dtype=dtype, config=config)
    engine.load_models(str(model_dir))
    return engine


def reference_forward(params, kinds, x):
    """Plain float64 forward pass used as ground truth."""
    y = np.asarray(x, dtype=np.float64)
    for (weights, bias), kind in zip(params, kinds):
        y = y @ weights.astype(np.float64).T + bias.astype(np.float64)
        if kind == "LinearGELU":
            y = dnninfer.gelu_reference(y)
    return y
