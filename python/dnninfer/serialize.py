# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import os
from typing import Dict, Iterable, Tuple

import numpy as np
import yaml

from . import log
from .data_type import FILE_DTYPE

__all__ = [
    "SETTING_FILE",
    "weights_filename",
    "bias_filename",
    "read_float_data",
    "write_float_data",
    "read_layer_parameters",
    "save_model",
]

SETTING_FILE = "setting.yaml"


def weights_filename(layer_id: int, in_features: int, out_features: int) -> str:
    return f"linear_{layer_id}_weights_rowmajor_{in_features}_{out_features}.data"


def bias_filename(layer_id: int, out_features: int) -> str:
    return f"linear_{layer_id}_bias_{out_features}.data"


def read_float_data(path: str, count: int) -> np.ndarray:
    """
    Read ``count`` little-endian float32 values from a raw binary file.
    """
    try:
        with open(path, "rb") as f:
            data = np.fromfile(f, dtype=FILE_DTYPE, count=count)
    except OSError as e:
        raise log.ModelError(f"open file error : {path} ({e.strerror})") from e
    if data.size != count:
        raise log.ModelError(
            f"short read : {path} holds {data.size} values, expected {count}"
        )
    return data


def write_float_data(path: str, array: np.ndarray) -> None:
    """
    Write an array as raw little-endian float32 values.
    """
    np.ascontiguousarray(array, dtype=FILE_DTYPE).tofile(path)


def read_layer_parameters(
    directory: str, layer_id: int, in_features: int, out_features: int
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Read the parameters of one layer from ``directory``.

    The weights file holds the row-major ``(in_features, out_features)``
    matrix; it is returned transposed, as an ``(out_features, in_features)``
    row-major array. The bias is returned as ``(out_features,)``.
    """
    weights = read_float_data(
        os.path.join(directory, weights_filename(layer_id, in_features, out_features)),
        in_features * out_features,
    )
    bias = read_float_data(
        os.path.join(directory, bias_filename(layer_id, out_features)),
        out_features,
    )
    weights = np.ascontiguousarray(weights.reshape(in_features, out_features).T)
    return weights, bias


def save_model(
    directory: str,
    setting: Dict,
    parameters: Dict[int, Iterable[Tuple[np.ndarray, np.ndarray]]],
) -> None:
    """
    Write a model directory: one ``<slot>/`` subdirectory per entry of
    ``parameters``, each holding ``setting.yaml`` and the parameter files.

    Args:
        directory: Root of the model directory.
        setting: Description with ``layers`` and ``model`` entries.
        parameters: For each slot, a sequence of ``(weights, bias)`` pairs
            with weights shaped ``(out_features, in_features)``.
    """
    text = yaml.safe_dump(setting, sort_keys=False)
    for slot, layer_params in parameters.items():
        slot_dir = os.path.join(directory, str(slot))
        os.makedirs(slot_dir, exist_ok=True)
        with open(os.path.join(slot_dir, SETTING_FILE), "w") as f:
            f.write(text)
        for layer_id, (weights, bias) in enumerate(layer_params):
            out_features, in_features = weights.shape
            write_float_data(
                os.path.join(
                    slot_dir,
                    weights_filename(layer_id, in_features, out_features),
                ),
                weights.T,
            )
            write_float_data(
                os.path.join(slot_dir, bias_filename(layer_id, out_features)),
                bias,
            )
    log.INFO(f"saved {len(parameters)} model slot(s) to {directory}")
