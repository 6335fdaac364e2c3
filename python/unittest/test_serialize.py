# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

from common import dnninfer, pytest_dnninfer, make_setting
from dnninfer import serialize
import numpy as np
import os
import pytest
import yaml


@pytest_dnninfer()
def test_filenames():
    assert (
        serialize.weights_filename(0, 4, 3)
        == "linear_0_weights_rowmajor_4_3.data"
    )
    assert serialize.bias_filename(2, 16) == "linear_2_bias_16.data"


@pytest_dnninfer()
def test_read_float_data(tmp_path):
    path = str(tmp_path / "values.data")
    values = np.array([1.5, -2.0, 3.25], dtype=np.float32)
    with open(path, "wb") as f:
        f.write(values.astype("<f4").tobytes())

    data = serialize.read_float_data(path, 3)
    assert data.dtype == np.dtype("<f4")
    np.testing.assert_array_equal(data, values)

    with pytest.raises(dnninfer.ModelError, match="short read"):
        serialize.read_float_data(path, 4)
    with pytest.raises(dnninfer.ModelError, match="open file error"):
        serialize.read_float_data(str(tmp_path / "missing.data"), 3)


@pytest_dnninfer()
def test_read_layer_parameters_transposes(tmp_path):
    # The weights file is the row-major (in_features, out_features) matrix.
    file_matrix = np.arange(6, dtype=np.float32).reshape(2, 3)
    serialize.write_float_data(
        str(tmp_path / serialize.weights_filename(1, 2, 3)), file_matrix
    )
    serialize.write_float_data(
        str(tmp_path / serialize.bias_filename(1, 3)),
        np.array([7, 8, 9], dtype=np.float32),
    )

    weights, bias = serialize.read_layer_parameters(str(tmp_path), 1, 2, 3)

    assert weights.shape == (3, 2)
    assert weights.flags["C_CONTIGUOUS"]
    np.testing.assert_array_equal(weights, file_matrix.T)
    np.testing.assert_array_equal(bias, [7, 8, 9])


@pytest_dnninfer()
def test_save_model_layout(tmp_path):
    weights = np.array([[1, 2], [3, 4], [5, 6]], dtype=np.float32)
    bias = np.array([0.5, 0.25, 0.125], dtype=np.float32)
    setting = make_setting([2, 3], ["Linear"])
    dnninfer.save_model(str(tmp_path), setting, {0: [(weights, bias)]})

    slot_dir = tmp_path / "0"
    with open(slot_dir / serialize.SETTING_FILE) as f:
        assert yaml.safe_load(f) == setting
    raw = np.fromfile(
        str(slot_dir / "linear_0_weights_rowmajor_2_3.data"), dtype="<f4"
    )
    np.testing.assert_array_equal(raw, [1, 3, 5, 2, 4, 6])
    assert os.path.getsize(slot_dir / "linear_0_bias_3.data") == 12
    assert not (tmp_path / "1").exists()
