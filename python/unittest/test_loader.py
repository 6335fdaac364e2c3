# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

from common import (
    dnninfer,
    pytest_dnninfer,
    make_model,
    make_setting,
    run_ranks,
)
from dnninfer import serialize
import numpy as np
import os
import pytest


WIDTHS = [4, 16, 8, 2]


def load_on_rank(rank, model_dir, dtype_name):
    config = dnninfer.Config(batch_size=8, num_threads=1, perf_report=False)
    with dnninfer.InferenceEngine(
        dtype=dnninfer.DataType.from_name(dtype_name), config=config
    ) as engine:
        engine.load_models(model_dir)
        state = [
            [(layer.weights.tobytes(), layer.bias.tobytes()) for layer in model]
            for model in engine.models
        ]
        return {
            "layers": engine.layers,
            "kinds": [layer.kind.value for layer in engine.models[0]],
            "state": state,
        }


@pytest.mark.parametrize("world_size", [1, 4])
@pytest_dnninfer()
def test_load_identical_on_all_ranks(tmp_path, world_size):
    params = make_model(tmp_path, WIDTHS)

    results = run_ranks(load_on_rank, world_size, str(tmp_path), "fp32")

    for result in results:
        assert not isinstance(result, Exception), result
        assert result["layers"] == WIDTHS
        assert result["kinds"] == ["LinearGELU", "LinearGELU", "Linear"]
        assert result["state"] == results[0]["state"]
    for slot in range(dnninfer.NUM_SLOTS):
        for (w_bytes, b_bytes), (weights, bias) in zip(
            results[0]["state"][slot], params[slot]
        ):
            assert w_bytes == weights.tobytes()
            assert b_bytes == bias.tobytes()


@pytest_dnninfer()
def test_load_widens_to_fp64(tmp_path):
    params = make_model(tmp_path, WIDTHS)

    (result,) = run_ranks(load_on_rank, 1, str(tmp_path), "fp64")

    w_bytes, b_bytes = result["state"][2][1]
    weights, bias = params[2][1]
    np.testing.assert_array_equal(
        np.frombuffer(w_bytes, dtype=np.float64).reshape(weights.shape),
        weights.astype(np.float64),
    )
    np.testing.assert_array_equal(
        np.frombuffer(b_bytes, dtype=np.float64), bias.astype(np.float64)
    )


@pytest_dnninfer()
def test_load_missing_weights_fails_on_every_rank(tmp_path):
    make_model(tmp_path, WIDTHS)
    os.remove(
        tmp_path / "1" / serialize.weights_filename(1, WIDTHS[1], WIDTHS[2])
    )

    results = run_ranks(load_on_rank, 4, str(tmp_path), "fp32")

    for result in results:
        assert isinstance(result, dnninfer.ModelError)
        assert "linear_1_weights_rowmajor_16_8.data" in str(result)


@pytest_dnninfer()
def test_load_missing_setting_fails_on_every_rank(tmp_path):
    results = run_ranks(load_on_rank, 2, str(tmp_path), "fp32")

    for result in results:
        assert isinstance(result, dnninfer.ModelError)
        assert "setting.yaml" in str(result)


@pytest_dnninfer(process_group=True)
def test_load_unknown_layer_type(tmp_path):
    make_model(tmp_path, [4, 3, 2], kinds=["LinearGELU", "Sigmoid"])
    engine = dnninfer.InferenceEngine(
        config=dnninfer.Config(batch_size=4, perf_report=False)
    )
    with pytest.raises(dnninfer.ModelError, match="Sigmoid"):
        engine.load_models(str(tmp_path))
    assert not engine.loaded


@pytest_dnninfer()
def test_load_requires_process_group(tmp_path):
    make_model(tmp_path, [4, 2])
    engine = dnninfer.InferenceEngine(
        config=dnninfer.Config(batch_size=4, perf_report=False)
    )
    with pytest.raises(dnninfer.SystemError):
        engine.load_models(str(tmp_path))


@pytest_dnninfer()
def test_description():
    desc = dnninfer.ModelDescription(make_setting([4, 3, 2]))
    assert desc.layers == [4, 3, 2]
    assert desc.model == [
        {"type": "LinearGELU", "in_features": 4, "out_features": 3},
        {"type": "Linear", "in_features": 3, "out_features": 2},
    ]
    assert dnninfer.ModelDescription.from_str(str(desc)).setting == desc.setting


@pytest.mark.parametrize(
    "setting",
    [
        {"layers": [4], "model": []},
        {"layers": [4, 2], "model": []},
        {"model": make_setting([4, 2])["model"]},
        {"layers": [4, 3, 2], "model": make_setting([4, 2])["model"]},
        {"layers": [4, 3], "model": make_setting([4, 2])["model"]},
        {"layers": [4, 2], "model": [{"type": "Linear"}]},
        {"layers": [4, 0], "model": make_setting([4, 0])["model"]},
        ["layers", "model"],
    ],
)
@pytest_dnninfer()
def test_description_invalid(setting):
    with pytest.raises(dnninfer.ModelError):
        dnninfer.ModelDescription(setting)


@pytest_dnninfer()
def test_description_invalid_yaml():
    with pytest.raises(dnninfer.ModelError):
        dnninfer.ModelDescription.from_str("layers: [4, 2\nmodel: :")
