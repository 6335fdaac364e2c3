# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

from common import dnninfer, pytest_dnninfer
import numpy as np
import pytest


def gelu_inputs(dtype):
    # Dense grid plus the region where |z| crosses the saturation point 8.
    x = np.concatenate(
        [
            np.linspace(-20.0, 20.0, 400001),
            np.linspace(-5.2, -4.6, 20001),
            np.linspace(4.6, 5.2, 20001),
        ]
    )
    return x.astype(dtype)


@pytest.mark.parametrize("dtype", [np.float32, np.float64])
@pytest_dnninfer()
def test_gelu_fast_matches_reference(dtype):
    x = gelu_inputs(dtype)
    ref = dnninfer.gelu_reference(x)
    fast = dnninfer.gelu_fast(x)

    assert ref.dtype == dtype
    assert fast.dtype == dtype
    np.testing.assert_allclose(fast, ref, rtol=1e-5, atol=1e-6)


@pytest.mark.parametrize("dtype", [np.float32, np.float64])
@pytest_dnninfer()
def test_gelu_zero(dtype):
    x = np.zeros(4, dtype=dtype)
    assert np.all(dnninfer.gelu_reference(x) == 0)
    assert np.all(dnninfer.gelu_fast(x) == 0)


@pytest.mark.parametrize("dtype", [np.float32, np.float64])
@pytest.mark.parametrize("gelu", ["gelu_reference", "gelu_fast"])
@pytest_dnninfer()
def test_gelu_monotonic(dtype, gelu):
    x = np.arange(0, 20, 1e-3).astype(dtype)
    y = getattr(dnninfer, gelu)(x)
    assert np.all(np.diff(y) >= 0)


@pytest_dnninfer()
def test_tanh_exp_saturation():
    z = np.array([8.0001, 9.0, 1e4, -8.0001, -9.0, -1e4], dtype=np.float32)
    with np.errstate(over="raise"):
        t = dnninfer.tanh_exp(z)
    np.testing.assert_array_equal(t, [1, 1, 1, -1, -1, -1])

    z = np.linspace(-8, 8, 10001).astype(np.float32)
    np.testing.assert_allclose(dnninfer.tanh_exp(z), np.tanh(z), atol=1e-6)


@pytest_dnninfer()
def test_gelu_pure_functions_do_not_modify_input():
    x = np.linspace(-3, 3, 11, dtype=np.float32)
    x_copy = x.copy()
    dnninfer.gelu_fast(x)
    dnninfer.gelu_reference(x)
    np.testing.assert_array_equal(x, x_copy)


@pytest.mark.parametrize("num_threads", [1, 4])
@pytest_dnninfer()
def test_fast_backend_in_place(num_threads):
    rng = np.random.default_rng(0)
    data = (rng.standard_normal((300, 7)) * 6).astype(np.float32)
    expected = dnninfer.gelu_fast(data)

    backend = dnninfer.FastGelu(num_threads=num_threads, block_size=64)
    try:
        backend(data)
    finally:
        backend.close()
    np.testing.assert_array_equal(data, expected)


@pytest.mark.parametrize("num_threads", [1, 3])
@pytest_dnninfer()
def test_reference_backend_in_place(num_threads):
    rng = np.random.default_rng(1)
    data = (rng.standard_normal(5000) * 6).astype(np.float64)
    expected = dnninfer.gelu_reference(data)

    backend = dnninfer.ReferenceGelu(num_threads=num_threads, block_size=100)
    try:
        backend(data)
    finally:
        backend.close()
    np.testing.assert_array_equal(data, expected)


@pytest.mark.parametrize("num_threads", [1, 3, 64])
@pytest_dnninfer()
def test_tiled_backend_matches_reference(num_threads):
    rng = np.random.default_rng(2)
    data = (rng.standard_normal(1000) * 6).astype(np.float32)
    expected = dnninfer.gelu_reference(data)

    backend = dnninfer.TiledGelu(num_threads=num_threads, block_size=100)
    try:
        backend(data)
        # Reusing the worker buffers must not leak state between calls.
        again = (rng.standard_normal(250) * 6).astype(np.float32)
        again_expected = dnninfer.gelu_reference(again)
        backend(again)
    finally:
        backend.close()
    np.testing.assert_array_equal(data, expected)
    np.testing.assert_array_equal(again, again_expected)


@pytest_dnninfer()
def test_backend_registry():
    assert isinstance(dnninfer.get_backend("fast"), dnninfer.FastGelu)
    assert isinstance(dnninfer.get_backend("reference"), dnninfer.ReferenceGelu)
    tiled = dnninfer.get_backend("tiled", num_threads=2, block_size=16)
    assert isinstance(tiled, dnninfer.TiledGelu)
    assert tiled.num_threads == 2
    assert tiled.block_size == 16

    with pytest.raises(dnninfer.InvalidUsageError):
        dnninfer.get_backend("sigmoid")
    with pytest.raises(dnninfer.InvalidUsageError):
        dnninfer.FastGelu(num_threads=0)


@pytest_dnninfer()
def test_backend_rejects_non_contiguous():
    data = np.zeros((8, 8), dtype=np.float32)[:, ::2]
    with pytest.raises(dnninfer.InvalidUsageError):
        dnninfer.FastGelu()(data)


@pytest_dnninfer(need_torch=True)
def test_gelu_torch():
    import torch
    import torch.nn.functional as F

    x = np.linspace(-10, 10, 100001).astype(np.float32)
    gt = F.gelu(torch.from_numpy(x), approximate="tanh").numpy()

    np.testing.assert_allclose(dnninfer.gelu_fast(x), gt, rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(
        dnninfer.gelu_reference(x), gt, rtol=1e-5, atol=1e-6
    )


@pytest.mark.parametrize("name", ["fast", "reference", "tiled"])
@pytest_dnninfer()
def test_backend_workspace_bounded(name):
    rng = np.random.default_rng(3)
    backend = dnninfer.get_backend(name, num_threads=2, block_size=128)
    try:
        small = rng.standard_normal(100)
        backend(small)
        nbytes = backend.workspace_nbytes()
        assert 0 < nbytes <= 2 * 3 * 128 * 8 + 2 * 128

        large = rng.standard_normal(100000)
        gelu = dnninfer.gelu_fast if name == "fast" else dnninfer.gelu_reference
        expected = gelu(large)
        backend(large)
        assert backend.workspace_nbytes() == nbytes
    finally:
        backend.close()
    assert backend.workspace_nbytes() == 0
    np.testing.assert_array_equal(large, expected)
