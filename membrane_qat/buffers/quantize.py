# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""
Symmetric integer fake quantization on torch views.

Formulas:
    q = clip(round(x / scale), qmin, qmax)
    x = q * scale

``fake_quantize`` performs quantize + dequantize in place, which is what
the tiled transform and the precision selector need.
"""

from __future__ import annotations

from typing import Optional, Tuple

import torch


def integer_range(bits: int) -> Tuple[int, int]:
    """Signed integer range for a bit width, e.g. 8 -> (-128, 127)."""
    if bits < 2:
        raise ValueError(f"Quantization needs at least 2 bits, got {bits}")
    return -(1 << (bits - 1)), (1 << (bits - 1)) - 1


def symmetric_scale(values: torch.Tensor, bits: int) -> float:
    """Per-tensor symmetric scale for ``bits``; 1.0 for all-zero input."""
    _, qmax = integer_range(bits)
    if values.numel() == 0:
        return 1.0
    max_abs = float(values.detach().abs().max().item())
    scale = max_abs / qmax
    return scale if scale > 0 else 1.0


def fake_quantize(
    values: torch.Tensor,
    bits: int,
    scale: Optional[float] = None,
) -> torch.Tensor:
    """
    Quantize/dequantize ``values`` in place and return it.

    ``scale`` defaults to the symmetric scale of ``values`` itself.
    """
    qmin, qmax = integer_range(bits)
    if scale is None:
        scale = symmetric_scale(values, bits)
    work = values.detach().to(torch.float32)
    work = torch.clamp(torch.round(work / scale), qmin, qmax) * scale
    values.copy_(work.to(values.dtype))
    return values


def relative_error(original: torch.Tensor, approx: torch.Tensor) -> float:
    """||original - approx|| / ||original||, 0.0 for an all-zero original."""
    reference = original.detach().to(torch.float32)
    norm = float(torch.linalg.vector_norm(reference).item())
    if norm == 0.0:
        return 0.0
    diff = reference - approx.detach().to(torch.float32)
    return float(torch.linalg.vector_norm(diff).item()) / norm
