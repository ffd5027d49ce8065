# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Buffer capability, concrete buffers and the allocation context."""

from .allocation import MAX_DIMS, AllocationContext, generate_synthetic_data
from .buffer_base import Buffer, ElementType, as_element_type
from .numpy_buffer import NumpyBuffer
from .quantize import (
    fake_quantize,
    integer_range,
    relative_error,
    symmetric_scale,
)
from .torch_buffer import TorchBuffer

__all__ = [
    "MAX_DIMS",
    "AllocationContext",
    "Buffer",
    "ElementType",
    "NumpyBuffer",
    "TorchBuffer",
    "as_element_type",
    "fake_quantize",
    "generate_synthetic_data",
    "integer_range",
    "relative_error",
    "symmetric_scale",
]
