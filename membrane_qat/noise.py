# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Pseudo-random noise used to simulate quantization error."""

from __future__ import annotations

from typing import Optional

import torch

DEFAULT_NOISE_SEED = 12345

_default_generator: Optional[torch.Generator] = None


def default_generator() -> torch.Generator:
    """Process-wide generator, created on first use with a fixed seed."""
    global _default_generator
    if _default_generator is None:
        _default_generator = torch.Generator(device="cpu")
        _default_generator.manual_seed(DEFAULT_NOISE_SEED)
    return _default_generator


def reset_default_generator(seed: int = DEFAULT_NOISE_SEED) -> torch.Generator:
    """Reseed the process-wide generator and return it."""
    generator = default_generator()
    generator.manual_seed(seed)
    return generator


def uniform_noise(
    count: int,
    scale: float,
    generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """Return ``count`` float32 samples drawn uniformly from [-scale, scale]."""
    if scale < 0:
        raise ValueError(f"Noise scale must be non-negative, got {scale}")
    generator = generator or default_generator()
    if count <= 0 or scale == 0:
        return torch.zeros(max(count, 0), dtype=torch.float32)
    unit = torch.rand(count, generator=generator, dtype=torch.float32)
    return (unit - 0.5) * (2.0 * scale)
