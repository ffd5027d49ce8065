# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Buffer capability consumed by membranes and transformation passes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Tuple

import torch


class ElementType(str, Enum):
    """Element kinds a buffer may report."""

    F32 = "f32"
    F16 = "f16"
    QUANTIZED = "quantized"
    OTHER = "other"

    @property
    def is_float(self) -> bool:
        return self in (ElementType.F32, ElementType.F16)


def as_element_type(value: Optional[object]) -> Optional[ElementType]:
    """Convert arbitrary input into an ElementType enum when possible."""
    if value is None:
        return None
    if isinstance(value, ElementType):
        return value
    return ElementType(str(value).lower())


class Buffer(ABC):
    """
    Externally owned numeric array referenced by a membrane.

    Membranes hold buffers by reference only. Whoever created the buffer
    (an allocation context, a state dict, a numpy array) keeps it alive and
    is responsible for releasing it.
    """

    def __init__(self, name: Optional[str] = None) -> None:
        self.name = name or ""

    @property
    @abstractmethod
    def shape(self) -> Tuple[int, ...]:
        """Logical shape of the buffer."""

    @abstractmethod
    def element_count(self) -> int:
        """Number of elements held by the buffer."""

    @abstractmethod
    def element_type(self) -> ElementType:
        """Element kind of the buffer."""

    @abstractmethod
    def element_size(self) -> int:
        """Storage size of one element in bytes."""

    def quantized_kind(self) -> Optional[str]:
        """Quantization scheme name for QUANTIZED buffers, None otherwise."""
        return None

    @abstractmethod
    def as_mutable_float_slice(self) -> Optional[torch.Tensor]:
        """
        Return a flat float view sharing storage with the buffer.

        Only F32/F16 buffers provide a view; every other kind returns None
        and must be skipped by quantization passes.
        """

    def nbytes(self) -> int:
        return self.element_count() * self.element_size()

    def __repr__(self) -> str:
        kind = self.element_type().value
        quant = self.quantized_kind()
        if quant:
            kind = f"{kind}:{quant}"
        return f"{type(self).__name__}(name={self.name!r}, shape={self.shape}, type={kind})"
