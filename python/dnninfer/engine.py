# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import time
from typing import List, MutableSequence, Optional, Sequence, Tuple, Union

import numpy as np

from . import log
from .activation import ActivationBackend, get_backend
from .comm import Communicator
from .config import Config
from .data_type import DataType, fp32
from .layer import Layer
from .loader import NUM_SLOTS, load_slot, read_description
from .profiler import Profiler, flops_per_sample
from .tensor import Tensor

__all__ = ["InferenceEngine"]


class InferenceEngine:
    """
    Batched inference over three independently loaded model slots that
    share one width schedule.

    Args:
        dtype: Working element type of the layers (fp32 or fp64).
        batch_size: Rows per tile. Defaults to ``Config.batch_size``.
        activation: GELU backend, or its name. Defaults to
            ``Config.gelu_backend``.
        comm: Collective layer used while loading.
        config: Settings; defaults to the process-wide configuration.

    One engine serves one caller at a time: the scratch buffers are shared
    by every ``infer`` call.
    """

    def __init__(
        self,
        dtype: DataType = fp32,
        batch_size: Optional[int] = None,
        activation: Union[ActivationBackend, str, None] = None,
        comm: Optional[Communicator] = None,
        config: Optional[Config] = None,
    ):
        self.config = config if config is not None else Config.get_config()
        if batch_size is None:
            batch_size = self.config.batch_size
        if batch_size <= 0:
            raise log.InvalidUsageError(
                f"batch_size must be positive, got {batch_size}"
            )
        if activation is None:
            activation = self.config.gelu_backend
        if isinstance(activation, str):
            activation = get_backend(
                activation,
                num_threads=self.config.num_threads,
                block_size=self.config.gelu_block_size,
            )
        self.dtype = dtype
        self.activation = activation
        self.comm = comm if comm is not None else Communicator()
        self.profiler = Profiler(self.comm, self.config)
        self._batch_size = batch_size
        self._layers: List[int] = []
        self._models: Tuple[List[Layer], ...] = ()
        self._buffers: List[np.ndarray] = []
        self._flops_per_sample = 0.0

    def __enter__(self) -> "InferenceEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def layers(self) -> List[int]:
        """Width schedule shared by all slots."""
        return list(self._layers)

    @property
    def input_dim(self) -> int:
        return self._layers[0]

    @property
    def output_dim(self) -> int:
        return self._layers[-1]

    @property
    def flops_per_sample(self) -> float:
        return self._flops_per_sample

    @property
    def models(self) -> Tuple[List[Layer], ...]:
        return self._models

    @property
    def loaded(self) -> bool:
        return len(self._models) == NUM_SLOTS

    def load_models(self, directory: str) -> None:
        """
        Collective: every rank must call this. The description in
        ``directory/0/setting.yaml`` and the parameters of slots ``0/``,
        ``1/`` and ``2/`` are read on rank 0 and broadcast, so every rank
        ends up with identical models. Raises on every rank if any step
        fails.
        """
        self.comm.check_initialized("InferenceEngine.load_models")
        if self.loaded:
            raise log.InvalidUsageError("models are already loaded")
        description = read_description(directory, self.comm)
        models = tuple(
            load_slot(
                directory,
                slot,
                description,
                self.comm,
                self.dtype,
                self.activation,
            )
            for slot in range(NUM_SLOTS)
        )
        layers = description.layers
        np_type = self.dtype.to_numpy()
        self._buffers = [
            np.empty(self._batch_size * width, dtype=np_type)
            for width in layers[1:]
        ]
        self._layers = layers
        self._models = models
        self._flops_per_sample = flops_per_sample(layers)
        log.INFO(
            f"loaded {NUM_SLOTS} models from {directory}: widths {layers}, "
            f"batch size {self._batch_size}, rank {self.comm.rank()} "
            f"of {self.comm.world_size()}"
        )

    def infer(
        self,
        sample_counts: Sequence[int],
        inputs: Sequence[Optional[np.ndarray]],
        outputs: Optional[MutableSequence[Optional[np.ndarray]]] = None,
    ) -> MutableSequence[Optional[np.ndarray]]:
        """
        Run every slot with a nonzero sample count on its inputs.

        Args:
            sample_counts: Samples per slot; 0 skips the slot.
            inputs: Per slot, ``count * input_dim`` values in row-major
                sample order.
            outputs: Per slot output buffers. A slot's entry is written in
                place when it already holds exactly ``count * output_dim``
                elements, otherwise it is replaced with a new float64 array.
                Entries of skipped slots are left untouched.

        Returns:
            The ``outputs`` list.
        """
        self._raise_if_not_loaded()
        if outputs is None:
            outputs = [None] * NUM_SLOTS
        if (
            len(sample_counts) != NUM_SLOTS
            or len(inputs) != NUM_SLOTS
            or len(outputs) != NUM_SLOTS
        ):
            raise log.InvalidUsageError(
                f"expected {NUM_SLOTS} sample counts, inputs and outputs"
            )
        start_time = time.time()
        counts = [int(c) for c in sample_counts]
        # Check every slot before any output is written.
        samples = [
            self._check_input(slot, counts[slot], inputs[slot])
            for slot in range(NUM_SLOTS)
        ]
        for slot in range(NUM_SLOTS):
            if counts[slot] == 0:
                continue
            outputs[slot] = self._infer_slot(
                slot, counts[slot], samples[slot], outputs[slot]
            )
        total = sum(counts)
        elapsed = time.time() - start_time
        self.profiler.report(
            total, self._batch_size, elapsed, total * self._flops_per_sample
        )
        return outputs

    def infer_multi_dnns(
        self,
        input0: Optional[np.ndarray],
        output0: Optional[np.ndarray],
        count0: int,
        input1: Optional[np.ndarray],
        output1: Optional[np.ndarray],
        count1: int,
        input2: Optional[np.ndarray],
        output2: Optional[np.ndarray],
        count2: int,
    ) -> Tuple[Optional[np.ndarray], ...]:
        """
        Three ``(input, output, count)`` triples; returns the three outputs.
        """
        outputs = self.infer(
            [count0, count1, count2],
            [input0, input1, input2],
            [output0, output1, output2],
        )
        return tuple(outputs)

    def close(self) -> None:
        """
        Release the layers, scratch buffers and activation workers.
        """
        self._models = ()
        self._buffers = []
        self._layers = []
        self._flops_per_sample = 0.0
        if self.activation is not None:
            self.activation.close()

    def _raise_if_not_loaded(self):
        if not self.loaded:
            raise log.InvalidUsageError(
                "no models loaded, call load_models() first"
            )

    def _check_input(
        self, slot: int, count: int, input: Optional[np.ndarray]
    ) -> Optional[np.ndarray]:
        """
        Validate one slot and return its samples as a flat array of the
        working type, or None for a skipped slot.
        """
        if count < 0:
            raise log.InvalidUsageError(
                f"negative sample count {count} for slot {slot}"
            )
        if count == 0:
            return None
        if input is None:
            raise log.InvalidUsageError(f"slot {slot}: no input for {count} samples")
        need = count * self.input_dim
        x = np.ascontiguousarray(input, dtype=self.dtype.to_numpy()).reshape(-1)
        if x.size < need:
            raise log.InvalidUsageError(
                f"slot {slot}: input holds {x.size} values, "
                f"{count} samples need {need}"
            )
        return x

    def _infer_slot(
        self,
        slot: int,
        count: int,
        x: np.ndarray,
        output: Optional[np.ndarray],
    ) -> np.ndarray:
        in_dim = self.input_dim
        out_dim = self.output_dim
        if (
            output is None
            or output.size != count * out_dim
            or not output.flags["C_CONTIGUOUS"]
            or not output.flags["WRITEABLE"]
        ):
            output = np.empty(count * out_dim, dtype=np.float64)
        out = output.reshape(-1)

        model = self._models[slot]
        widths = self._layers[1:]
        batch_size = self._batch_size
        for sample_start in range(0, count, batch_size):
            sample_len = min(count, sample_start + batch_size) - sample_start
            tensors = [Tensor((sample_len, in_dim), x, sample_start * in_dim)]
            for width, buffer in zip(widths, self._buffers):
                tensors.append(Tensor((sample_len, width), buffer))
            for i, layer in enumerate(model):
                layer.forward(tensors[i], tensors[i + 1])
            dst = out[sample_start * out_dim : (sample_start + sample_len) * out_dim]
            np.copyto(
                dst.reshape(sample_len, out_dim),
                tensors[-1].to_numpy(),
                casting="same_kind",
            )
        return output
