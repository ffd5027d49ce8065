# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Hierarchical membrane trees with data-free quantization passes."""

from .buffers import AllocationContext, Buffer, ElementType, NumpyBuffer, TorchBuffer, generate_synthetic_data
from .core import Membrane, Namespace, TeardownReport
from .errors import (
    AllocationFailed,
    CapacityExceeded,
    ExecError,
    InvalidArgs,
    MembraneError,
    NullRoot,
)
from .transforms import (
    EvolutionRule,
    QuantType,
    TransformConfig,
    TransformPipeline,
    apply_data_free_quant,
    evolve,
    forward_tiled_quant,
    mixed_precision_quant,
)

__version__ = "0.1.0"

__all__ = [
    "AllocationContext",
    "AllocationFailed",
    "Buffer",
    "CapacityExceeded",
    "ElementType",
    "EvolutionRule",
    "ExecError",
    "InvalidArgs",
    "Membrane",
    "MembraneError",
    "Namespace",
    "NullRoot",
    "NumpyBuffer",
    "QuantType",
    "TeardownReport",
    "TorchBuffer",
    "TransformConfig",
    "TransformPipeline",
    "apply_data_free_quant",
    "evolve",
    "forward_tiled_quant",
    "generate_synthetic_data",
    "mixed_precision_quant",
]
