# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Buffer backed by a torch tensor."""

from __future__ import annotations

from typing import Dict, Optional, Tuple

import torch

from .buffer_base import Buffer, ElementType

_FLOAT_DTYPES: Dict[torch.dtype, ElementType] = {
    torch.float32: ElementType.F32,
    torch.float16: ElementType.F16,
}

_QUANTIZED_DTYPES: Dict[torch.dtype, str] = {
    torch.qint8: "qint8",
    torch.quint8: "quint8",
    torch.qint32: "qint32",
    torch.quint4x2: "quint4x2",
    torch.quint2x4: "quint2x4",
}


class TorchBuffer(Buffer):
    """Wrap a torch tensor without taking ownership of its storage."""

    def __init__(self, tensor: torch.Tensor, name: Optional[str] = None) -> None:
        if not isinstance(tensor, torch.Tensor):
            raise TypeError(f"TorchBuffer expects a torch.Tensor, got {type(tensor).__name__}")
        if tensor.dtype in _FLOAT_DTYPES and not tensor.is_contiguous():
            raise ValueError("Float buffers must be contiguous so the float slice aliases storage")
        super().__init__(name)
        self.tensor = tensor

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.tensor.shape)

    def element_count(self) -> int:
        return int(self.tensor.numel())

    def element_type(self) -> ElementType:
        dtype = self.tensor.dtype
        if dtype in _FLOAT_DTYPES:
            return _FLOAT_DTYPES[dtype]
        if dtype in _QUANTIZED_DTYPES:
            return ElementType.QUANTIZED
        return ElementType.OTHER

    def element_size(self) -> int:
        return int(self.tensor.element_size())

    def quantized_kind(self) -> Optional[str]:
        return _QUANTIZED_DTYPES.get(self.tensor.dtype)

    def as_mutable_float_slice(self) -> Optional[torch.Tensor]:
        if self.tensor.dtype not in _FLOAT_DTYPES:
            return None
        return self.tensor.view(-1)
