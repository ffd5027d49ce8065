# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""
Mixed-precision selection.

Buffers above ``LARGE_BUFFER_THRESHOLD`` elements start from a more
aggressive candidate ladder than small ones. Each ladder is ordered from
lowest to highest precision; the selector keeps the first candidate whose
estimated quality reaches the threshold and falls back to the last one.
Because acceptance only gets stricter as the threshold grows, a higher
threshold never yields a lower-precision choice.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import torch

from ..buffers.buffer_base import Buffer
from ..buffers.quantize import fake_quantize, relative_error
from ..errors import InvalidArgs
from .config import QuantType

LARGE_BUFFER_THRESHOLD = 1_000_000

LARGE_CANDIDATES = (QuantType.Q4_K, QuantType.Q5_K, QuantType.Q6_K, QuantType.Q8_0)
SMALL_CANDIDATES = (QuantType.Q8_0, QuantType.F16)


@dataclass
class PrecisionDecision:
    """Outcome of precision selection for one buffer."""

    membrane: str
    buffer: str
    index: int
    element_count: int
    is_large: bool
    selected_type: Optional[QuantType]
    quality: Optional[float] = None
    rejected: List[Dict[str, Any]] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "membrane": self.membrane,
            "buffer": self.buffer,
            "index": self.index,
            "element_count": self.element_count,
            "is_large": self.is_large,
            "selected_type": self.selected_type.value if self.selected_type else None,
            "quality": self.quality,
            "rejected": self.rejected,
            "skipped_reason": self.skipped_reason,
        }


def is_large_buffer(buffer: Buffer, threshold: int = LARGE_BUFFER_THRESHOLD) -> bool:
    return buffer.element_count() > threshold


def estimate_quality(values: torch.Tensor, target: QuantType) -> float:
    """1 - relative L2 error of simulating ``target`` on ``values``, in [0, 1]."""
    original = values.detach().to(torch.float32)
    if target is QuantType.F32:
        return 1.0
    if target is QuantType.F16:
        approx = original.to(torch.float16).to(torch.float32)
    else:
        approx = fake_quantize(original.clone(), target.bits)
    return max(0.0, 1.0 - relative_error(original, approx))


class QualityThresholdSelector:
    """Pick the lowest-precision candidate meeting a quality threshold."""

    def __init__(
        self,
        large_candidates: Sequence[QuantType] = LARGE_CANDIDATES,
        small_candidates: Sequence[QuantType] = SMALL_CANDIDATES,
        large_threshold: int = LARGE_BUFFER_THRESHOLD,
    ) -> None:
        if not large_candidates or not small_candidates:
            raise InvalidArgs("Candidate ladders must not be empty")
        self.large_candidates = tuple(QuantType.parse(c) for c in large_candidates)
        self.small_candidates = tuple(QuantType.parse(c) for c in small_candidates)
        self.large_threshold = int(large_threshold)

    def candidates_for(self, buffer: Buffer) -> Sequence[QuantType]:
        if is_large_buffer(buffer, self.large_threshold):
            return self.large_candidates
        return self.small_candidates

    def select(
        self,
        membrane_name: str,
        index: int,
        buffer: Buffer,
        quality_threshold: float,
    ) -> PrecisionDecision:
        is_large = is_large_buffer(buffer, self.large_threshold)
        decision = PrecisionDecision(
            membrane=membrane_name,
            buffer=buffer.name,
            index=index,
            element_count=buffer.element_count(),
            is_large=is_large,
            selected_type=None,
        )

        values = buffer.as_mutable_float_slice()
        if values is None:
            element_type = buffer.element_type()
            if element_type.is_float:
                decision.skipped_reason = "read_only"
            else:
                decision.skipped_reason = f"non_float:{element_type.value}"
            return decision

        candidates = self.candidates_for(buffer)
        for candidate in candidates:
            quality = estimate_quality(values, candidate)
            if quality >= quality_threshold:
                decision.selected_type = candidate
                decision.quality = quality
                return decision
            decision.rejected.append(
                {"type": candidate.value, "quality": quality, "reason": "below_threshold"}
            )

        fallback = candidates[-1]
        decision.selected_type = fallback
        decision.quality = decision.rejected[-1]["quality"]
        decision.rejected.pop()
        return decision
