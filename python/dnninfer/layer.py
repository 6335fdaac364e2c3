# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

from enum import Enum
from typing import Any, Mapping

import numpy as np

from . import log
from .activation import ActivationBackend, FastGelu
from .comm import Communicator
from .data_type import DataType, fp32
from .serialize import read_layer_parameters
from .tensor import Tensor

__all__ = ["LayerKind", "Layer", "linear", "linear_gelu"]


class LayerKind(Enum):
    """
    Supported layer types, named as in the model description.
    """

    Linear = "Linear"
    LinearGELU = "LinearGELU"

    @staticmethod
    def from_name(name: str) -> "LayerKind":
        try:
            return LayerKind(name)
        except ValueError:
            raise log.ModelError(
                f"unknown layer type {name!r}, expected one of "
                f"{[k.value for k in LayerKind]}"
            ) from None


class Layer:
    """
    An affine layer ``output = input @ weights.T + bias``, optionally
    followed by an in-place GELU.

    Args:
        kind: Linear or LinearGELU.
        in_features: Input width.
        out_features: Output width.
        dtype: Working element type.
        activation: Backend applying GELU for LinearGELU layers.
    """

    def __init__(
        self,
        kind: LayerKind,
        in_features: int,
        out_features: int,
        dtype: DataType = fp32,
        activation: ActivationBackend = None,
    ):
        if in_features <= 0 or out_features <= 0:
            raise log.ModelError(
                f"invalid layer shape: in_features={in_features}, "
                f"out_features={out_features}"
            )
        self.kind = kind
        self.in_features = in_features
        self.out_features = out_features
        self.dtype = dtype
        if activation is None and kind is LayerKind.LinearGELU:
            activation = FastGelu()
        self.activation = activation
        np_type = dtype.to_numpy()
        self.weights = np.zeros((out_features, in_features), dtype=np_type)
        self.bias = np.zeros(out_features, dtype=np_type)

    def __repr__(self) -> str:
        return (
            f"{self.kind.value}(in_features={self.in_features}, "
            f"out_features={self.out_features}, dtype={self.dtype.__name__})"
        )

    @staticmethod
    def from_spec(
        spec: Mapping[str, Any],
        dtype: DataType = fp32,
        activation: ActivationBackend = None,
    ) -> "Layer":
        """
        Build a layer from a ``{type, in_features, out_features}`` mapping.
        """
        try:
            name = spec["type"]
            in_features = int(spec["in_features"])
            out_features = int(spec["out_features"])
        except (KeyError, TypeError, ValueError) as e:
            raise log.ModelError(f"malformed layer description {spec!r}") from e
        return Layer(
            LayerKind.from_name(name), in_features, out_features, dtype, activation
        )

    def set_parameters(self, weights: np.ndarray, bias: np.ndarray) -> "Layer":
        """
        Copy parameters into the layer, converting to its working type.
        ``weights`` is ``(out_features, in_features)``.
        """
        if weights.shape != self.weights.shape:
            raise log.InvalidUsageError(
                f"weights shape {weights.shape} does not match "
                f"{self.weights.shape}"
            )
        if bias.shape != self.bias.shape:
            raise log.InvalidUsageError(
                f"bias shape {bias.shape} does not match {self.bias.shape}"
            )
        np.copyto(self.weights, weights, casting="same_kind")
        np.copyto(self.bias, bias, casting="same_kind")
        return self

    def load_parameters(
        self, directory: str, layer_id: int, comm: Communicator
    ) -> "Layer":
        """
        Collective. The root rank reads the float32 parameter files for
        ``layer_id`` from ``directory`` and widens them to the working type;
        both arrays are then broadcast to every rank.
        """
        comm.check_initialized("Layer.load_parameters")
        error = None
        if comm.is_root():
            try:
                weights, bias = read_layer_parameters(
                    directory, layer_id, self.in_features, self.out_features
                )
                self.set_parameters(weights, bias)
            except log.ModelError as e:
                error = str(e)
                log.ERROR(error)
        comm.broadcast_status(error)
        comm.broadcast_array(self.weights)
        comm.broadcast_array(self.bias)
        return self

    def forward(self, input: Tensor, output: Tensor) -> None:
        """
        Compute the layer on ``input`` (rows x in_features) into ``output``
        (rows x out_features). Writes only into ``output``.
        """
        x = input.to_numpy()
        y = output.to_numpy()
        np.matmul(x, self.weights.T, out=y)
        np.add(y, self.bias, out=y)
        if self.kind is LayerKind.LinearGELU:
            self.activation(y)

    def __call__(self, input: Tensor, output: Tensor) -> None:
        return self.forward(input, output)


def linear(
    in_features: int, out_features: int, dtype: DataType = fp32
) -> Layer:
    """Linear layer without activation."""
    return Layer(LayerKind.Linear, in_features, out_features, dtype)


def linear_gelu(
    in_features: int,
    out_features: int,
    dtype: DataType = fp32,
    activation: ActivationBackend = None,
) -> Layer:
    """Linear layer followed by GELU."""
    return Layer(LayerKind.LinearGELU, in_features, out_features, dtype, activation)
