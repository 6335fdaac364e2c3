# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import copy
import os
from typing import Any, Dict, List

import yaml

from . import log
from .activation import ActivationBackend
from .comm import Communicator
from .data_type import DataType, fp32
from .layer import Layer
from .serialize import SETTING_FILE

__all__ = ["NUM_SLOTS", "ModelDescription", "read_description", "load_slot"]

NUM_SLOTS = 3


class ModelDescription:
    """
    Parsed model description: a ``layers`` width schedule and a ``model``
    list of ``{layer: {type, in_features, out_features}}`` entries.
    """

    def __init__(self, setting: Dict[str, Any]):
        if not isinstance(setting, dict):
            raise log.ModelError("model description must be a mapping")
        self.setting = copy.deepcopy(setting)
        self._validate()

    @staticmethod
    def from_str(text: str) -> "ModelDescription":
        try:
            setting = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise log.ModelError(f"cannot parse model description: {e}") from e
        return ModelDescription(setting)

    def __str__(self) -> str:
        return yaml.safe_dump(self.setting, sort_keys=False)

    @property
    def layers(self) -> List[int]:
        return [int(w) for w in self.setting["layers"]]

    @property
    def model(self) -> List[Dict[str, Any]]:
        return [entry["layer"] for entry in self.setting["model"]]

    def _validate(self):
        widths = self.setting.get("layers")
        entries = self.setting.get("model")
        if not isinstance(widths, list) or len(widths) < 2:
            raise log.ModelError(
                "model description needs a 'layers' list of at least two widths"
            )
        if not isinstance(entries, list) or len(entries) == 0:
            raise log.ModelError("model description has no layers")
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict) or not isinstance(entry.get("layer"), dict):
                raise log.ModelError(f"model entry {i} has no 'layer' mapping")
        try:
            widths = self.layers
        except (TypeError, ValueError) as e:
            raise log.ModelError(f"invalid layer widths {widths!r}") from e
        if any(w <= 0 for w in widths):
            raise log.ModelError(f"layer widths must be positive: {widths}")
        if len(entries) != len(widths) - 1:
            raise log.ModelError(
                f"{len(entries)} layers do not match the width schedule {widths}"
            )
        for i, spec in enumerate(self.model):
            expected = (widths[i], widths[i + 1])
            actual = (spec.get("in_features"), spec.get("out_features"))
            if tuple(actual) != expected:
                raise log.ModelError(
                    f"layer {i} has shape in={actual[0]} out={actual[1]}, "
                    f"the width schedule expects in={expected[0]} "
                    f"out={expected[1]}"
                )


def read_description(directory: str, comm: Communicator) -> ModelDescription:
    """
    Collective. The root rank reads ``directory/0/setting.yaml``; its bytes
    are broadcast so that every rank parses the same text.
    """
    comm.check_initialized("read_description")
    path = os.path.join(directory, "0", SETTING_FILE)
    text = None
    error = None
    if comm.is_root():
        try:
            with open(path, "rb") as f:
                text = f.read()
        except OSError as e:
            error = f"open setting file error , setting path : {path} ({e.strerror})"
            log.ERROR(error)
    comm.broadcast_status(error)
    text = comm.broadcast_bytes(text)
    return ModelDescription.from_str(text.decode("utf-8"))


def load_slot(
    directory: str,
    slot: int,
    description: ModelDescription,
    comm: Communicator,
    dtype: DataType = fp32,
    activation: ActivationBackend = None,
) -> List[Layer]:
    """
    Collective. Build the layer stack of ``slot`` from ``description`` and
    load its parameters from ``directory/<slot>/``.
    """
    layers = [
        Layer.from_spec(spec, dtype, activation) for spec in description.model
    ]
    slot_dir = os.path.join(directory, str(slot))
    for layer_id, layer in enumerate(layers):
        layer.load_parameters(slot_dir, layer_id, comm)
    log.DEBUG(f"loaded slot {slot}: {layers}")
    return layers
