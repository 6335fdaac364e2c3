# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import os
import tempfile
from typing import Optional

import numpy as np
import torch
import torch.distributed as dist

from . import log

__all__ = ["Communicator", "init_process_group", "destroy_process_group"]

ROOT_RANK = 0


def init_process_group(
    rank: int = 0,
    world_size: int = 1,
    init_method: Optional[str] = None,
    backend: str = "gloo",
) -> None:
    """
    Join the default process group. Hosts that already run under a launcher
    initialize ``torch.distributed`` themselves and never call this.

    Args:
        rank: Rank of this process.
        world_size: Number of participating processes.
        init_method: Rendezvous URL. When omitted, ``env://`` is used if
            ``MASTER_ADDR`` is set, otherwise a private file store, which is
            only valid for a single process.
        backend: torch.distributed backend name.
    """
    if dist.is_initialized():
        log.WARN("process group already initialized, skip")
        return
    if init_method is None:
        if "MASTER_ADDR" in os.environ:
            init_method = "env://"
        elif world_size == 1:
            fd, path = tempfile.mkstemp(prefix="dnninfer_store_")
            os.close(fd)
            os.remove(path)
            init_method = f"file://{path}"
        else:
            raise log.InvalidUsageError(
                "init_method is required for more than one process "
                "when MASTER_ADDR is not set"
            )
    dist.init_process_group(
        backend=backend,
        init_method=init_method,
        rank=rank,
        world_size=world_size,
    )
    log.INFO(f"joined process group: rank {rank} of {world_size}")


def destroy_process_group() -> None:
    if dist.is_initialized():
        dist.destroy_process_group()


class Communicator:
    """
    Blocking collectives over the default torch.distributed process group.
    Every rank must issue the same sequence of calls; a missing participant
    blocks the others indefinitely.
    """

    def __init__(self, root: int = ROOT_RANK):
        self.root = root

    def initialized(self) -> bool:
        return dist.is_available() and dist.is_initialized()

    def check_initialized(self, caller: str) -> None:
        """
        Raise SystemError if no process group is available.
        """
        if not self.initialized():
            raise log.SystemError(
                f"{caller} : distributed runtime is not initialized"
            )

    def rank(self) -> int:
        if not self.initialized():
            return ROOT_RANK
        return dist.get_rank()

    def world_size(self) -> int:
        if not self.initialized():
            return 1
        return dist.get_world_size()

    def is_root(self) -> bool:
        return self.rank() == self.root

    def barrier(self) -> None:
        if self.initialized():
            dist.barrier()

    def broadcast_array(self, array: np.ndarray) -> np.ndarray:
        """
        Broadcast a contiguous numpy array in place from the root rank,
        keeping its element type on the wire.
        """
        if not array.flags["C_CONTIGUOUS"] or not array.flags["WRITEABLE"]:
            raise log.InvalidUsageError(
                "broadcast buffer must be a writeable contiguous array"
            )
        if array.size == 0:
            return array
        dist.broadcast(torch.from_numpy(array), src=self.root)
        return array

    def broadcast_bytes(self, payload: Optional[bytes]) -> bytes:
        """
        Broadcast a byte string from the root rank: its length first, then
        its contents. Non-root ranks pass None.
        """
        count = np.zeros(1, dtype=np.int64)
        if self.is_root():
            count[0] = len(payload)
        self.broadcast_array(count)
        buffer = np.zeros(int(count[0]), dtype=np.uint8)
        if self.is_root():
            buffer[:] = np.frombuffer(payload, dtype=np.uint8)
        self.broadcast_array(buffer)
        return buffer.tobytes()

    def broadcast_status(self, error: Optional[str]) -> None:
        """
        Share the outcome of a root-only step. An empty message means
        success; otherwise every rank raises ModelError with the root's
        message.
        """
        message = self.broadcast_bytes(
            (error or "").encode("utf-8") if self.is_root() else None
        ).decode("utf-8")
        if message:
            raise log.ModelError(message)
