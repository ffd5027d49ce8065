# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""External allocation context that owns buffers referenced by membranes."""

from __future__ import annotations

from typing import List, Optional, Sequence, Union

import torch

from ..errors import AllocationFailed, InvalidArgs
from ..noise import uniform_noise
from .buffer_base import ElementType, as_element_type
from .torch_buffer import TorchBuffer

MAX_DIMS = 4

_ELEMENT_DTYPES = {
    ElementType.F32: torch.float32,
    ElementType.F16: torch.float16,
}


def _resolve_dtype(element_type: Union[ElementType, str, torch.dtype]) -> torch.dtype:
    if isinstance(element_type, torch.dtype):
        return element_type
    resolved = as_element_type(element_type)
    if resolved not in _ELEMENT_DTYPES:
        raise InvalidArgs(f"Cannot allocate buffers of element type '{element_type}'")
    return _ELEMENT_DTYPES[resolved]


def _validate_shape(shape: Sequence[int]) -> List[int]:
    dims = [int(dim) for dim in shape] if shape is not None else []
    if not dims or len(dims) > MAX_DIMS:
        raise InvalidArgs(f"Buffers need between 1 and {MAX_DIMS} dimensions, got {len(dims)}")
    if any(dim <= 0 for dim in dims):
        raise InvalidArgs(f"Buffer dimensions must be positive, got {dims}")
    return dims


class AllocationContext:
    """
    Fixed-budget arena for parameter buffers.

    The context owns every buffer it allocates. Membranes created against it
    only borrow those buffers, so the context must outlive them.
    """

    def __init__(self, mem_size: int, name: str = "default") -> None:
        if mem_size <= 0:
            raise InvalidArgs(f"mem_size must be positive, got {mem_size}")
        self.name = name
        self.mem_size = int(mem_size)
        self.used_bytes = 0
        self.buffers: List[TorchBuffer] = []
        self._released = False

    @property
    def is_released(self) -> bool:
        return self._released

    @property
    def free_bytes(self) -> int:
        return self.mem_size - self.used_bytes

    def ensure_alive(self) -> None:
        if self._released:
            raise AllocationFailed(f"Allocation context '{self.name}' has been released")

    def new_tensor(
        self,
        shape: Sequence[int],
        element_type: Union[ElementType, str, torch.dtype] = ElementType.F32,
        name: Optional[str] = None,
    ) -> TorchBuffer:
        """Allocate a zero-filled buffer of 1-4 dimensions."""
        self.ensure_alive()
        dims = _validate_shape(shape)
        dtype = _resolve_dtype(element_type)

        count = 1
        for dim in dims:
            count *= dim
        nbytes = count * torch.empty((), dtype=dtype).element_size()
        if nbytes > self.free_bytes:
            raise AllocationFailed(
                f"Allocation context '{self.name}' cannot fit {nbytes} bytes "
                f"({self.free_bytes} of {self.mem_size} free)"
            )

        try:
            tensor = torch.zeros(dims, dtype=dtype)
        except RuntimeError as exc:
            raise AllocationFailed(f"Failed to allocate {nbytes} bytes: {exc}") from exc

        buffer = TorchBuffer(tensor, name=name or f"{self.name}_buf{len(self.buffers)}")
        self.used_bytes += nbytes
        self.buffers.append(buffer)
        return buffer

    def free(self) -> None:
        """Release every buffer owned by this context. Safe to call twice."""
        self.buffers.clear()
        self.used_bytes = 0
        self._released = True


def generate_synthetic_data(
    ctx: AllocationContext,
    shape: Sequence[int],
    noise_scale: float,
    generator: Optional[torch.Generator] = None,
    name: Optional[str] = None,
) -> TorchBuffer:
    """Allocate an F32 buffer filled with uniform noise in [-noise_scale, noise_scale]."""
    if ctx is None:
        raise InvalidArgs("generate_synthetic_data requires an allocation context")
    if noise_scale < 0:
        raise InvalidArgs(f"noise_scale must be non-negative, got {noise_scale}")
    buffer = ctx.new_tensor(shape, ElementType.F32, name=name)
    values = buffer.as_mutable_float_slice()
    values.copy_(uniform_noise(values.numel(), noise_scale, generator))
    return buffer
