# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Buffer backed by a host numpy array."""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
import torch

from .buffer_base import Buffer, ElementType


class NumpyBuffer(Buffer):
    """
    Wrap a C-contiguous numpy array.

    Integer arrays holding packed or already-quantized weights can be tagged
    with a ``quantized_kind`` so passes treat them as already quantized.
    """

    def __init__(
        self,
        array: np.ndarray,
        name: Optional[str] = None,
        quantized_kind: Optional[str] = None,
    ) -> None:
        if not isinstance(array, np.ndarray):
            raise TypeError(f"NumpyBuffer expects a numpy.ndarray, got {type(array).__name__}")
        if not array.flags.c_contiguous:
            raise ValueError("NumpyBuffer requires a C-contiguous array")
        if quantized_kind is not None and not np.issubdtype(array.dtype, np.integer):
            raise ValueError("quantized_kind is only valid for integer arrays")
        super().__init__(name)
        self.array = array
        self._quantized_kind = quantized_kind

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(int(dim) for dim in self.array.shape)

    def element_count(self) -> int:
        return int(self.array.size)

    def element_type(self) -> ElementType:
        if self._quantized_kind is not None:
            return ElementType.QUANTIZED
        if self.array.dtype == np.float32:
            return ElementType.F32
        if self.array.dtype == np.float16:
            return ElementType.F16
        return ElementType.OTHER

    def element_size(self) -> int:
        return int(self.array.itemsize)

    def quantized_kind(self) -> Optional[str]:
        return self._quantized_kind

    def as_mutable_float_slice(self) -> Optional[torch.Tensor]:
        if not self.element_type().is_float:
            return None
        if not self.array.flags.writeable:
            return None
        # torch.from_numpy shares memory, so in-place updates land in the array.
        return torch.from_numpy(self.array.reshape(-1))
