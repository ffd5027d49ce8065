# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""
Transform configuration values.

A ``TransformConfig`` is immutable once built. Membranes store their own
copy the first time a pass reaches them, so callers may reuse or discard the
original freely.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping

from ..errors import InvalidArgs


class QuantType(str, Enum):
    """Target representation tags, named after the tensor-library types."""

    F32 = "f32"
    F16 = "f16"
    Q4_0 = "q4_0"
    Q4_1 = "q4_1"
    Q5_0 = "q5_0"
    Q5_1 = "q5_1"
    Q8_0 = "q8_0"
    Q8_1 = "q8_1"
    Q2_K = "q2_k"
    Q3_K = "q3_k"
    Q4_K = "q4_k"
    Q5_K = "q5_k"
    Q6_K = "q6_k"
    Q8_K = "q8_k"
    I8 = "i8"
    I16 = "i16"
    I32 = "i32"

    @classmethod
    def parse(cls, value: object) -> "QuantType":
        """Accept an enum member, its value or its name (case-insensitive)."""
        if isinstance(value, QuantType):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if member.value == text:
                return member
        raise InvalidArgs(f"Unknown quantization type: {value}")

    @property
    def is_float(self) -> bool:
        return self in (QuantType.F32, QuantType.F16)

    @property
    def bits(self) -> int:
        """Nominal bits per weight."""
        return _TYPE_BITS[self]


_TYPE_BITS: Dict[QuantType, int] = {
    QuantType.F32: 32,
    QuantType.F16: 16,
    QuantType.Q4_0: 4,
    QuantType.Q4_1: 4,
    QuantType.Q5_0: 5,
    QuantType.Q5_1: 5,
    QuantType.Q8_0: 8,
    QuantType.Q8_1: 8,
    QuantType.Q2_K: 2,
    QuantType.Q3_K: 3,
    QuantType.Q4_K: 4,
    QuantType.Q5_K: 5,
    QuantType.Q6_K: 6,
    QuantType.Q8_K: 8,
    QuantType.I8: 8,
    QuantType.I16: 16,
    QuantType.I32: 32,
}


@dataclass(frozen=True)
class TransformConfig:
    """Parameters of a quantization/transform pass."""

    target_type: QuantType
    noise_scale: float
    per_channel: bool = True
    mixed_precision: bool = False
    # Simulated training loop; stored only.
    temperature: float = 1.0
    num_steps: int = 100
    learning_rate: float = 0.001
    # Forward tiled processing.
    tile_size: int = 3
    use_reference: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "target_type", QuantType.parse(self.target_type))
        if self.noise_scale is None or self.noise_scale < 0:
            raise InvalidArgs(f"noise_scale must be >= 0, got {self.noise_scale}")
        if int(self.tile_size) <= 0:
            raise InvalidArgs(f"tile_size must be positive, got {self.tile_size}")
        if int(self.num_steps) < 0:
            raise InvalidArgs(f"num_steps must be >= 0, got {self.num_steps}")
        object.__setattr__(self, "noise_scale", float(self.noise_scale))
        object.__setattr__(self, "tile_size", int(self.tile_size))
        object.__setattr__(self, "num_steps", int(self.num_steps))

    @classmethod
    def new(cls, target_type: object, noise_scale: float) -> "TransformConfig":
        """Build a config with the default training and tiling parameters."""
        return cls(target_type=QuantType.parse(target_type), noise_scale=noise_scale)

    def replace(self, **changes: Any) -> "TransformConfig":
        """Return a copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["target_type"] = self.target_type.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TransformConfig":
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidArgs(f"Unknown transform config keys: {', '.join(unknown)}")
        if "target_type" not in data or "noise_scale" not in data:
            raise InvalidArgs("Transform config needs 'target_type' and 'noise_scale'")
        return cls(**dict(data))
