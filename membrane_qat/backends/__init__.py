# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Compute backend package."""

from __future__ import annotations

from typing import Any, Dict, List, Type

from .backend_base import ComputeBackend, ComputeGraph
from .torch_backend import CpuBackend, TorchBackend

BACKEND_REGISTRY: Dict[str, Type[ComputeBackend]] = {
    CpuBackend.name: CpuBackend,
    TorchBackend.name: TorchBackend,
}

# Accelerator spellings that map onto a torch device type.
DEVICE_ALIASES: Dict[str, str] = {
    "gpu": "cuda",
    "nvidia": "cuda",
    "rocm": "cuda",
    "apple": "mps",
}


def resolve_device(name: str) -> str:
    """Map an alias such as ``gpu`` or ``gpu:1`` onto a torch device string."""
    device_type, sep, index = name.partition(":")
    return DEVICE_ALIASES.get(device_type, device_type) + sep + index


def create_backend(name: str, **kwargs: Any) -> ComputeBackend:
    """Create a backend by registry name, device alias or torch device string.

    ``cpu`` and ``torch`` pick the registered classes. Anything else is
    treated as a device (``cuda:1``, ``meta``, ``gpu``) and served by a
    :class:`TorchBackend` placed on it.
    """
    canonical = (name or "").strip().lower()
    backend_cls = BACKEND_REGISTRY.get(canonical)
    if backend_cls is not None:
        return backend_cls(**kwargs)
    if canonical:
        try:
            return TorchBackend(device=resolve_device(canonical), **kwargs)
        except ValueError:
            pass
    available = ", ".join(sorted(BACKEND_REGISTRY) + sorted(DEVICE_ALIASES))
    raise ValueError(
        f"Unknown backend '{name}'. Available backends: {available}, or a torch device string"
    )


def available_backends() -> List[str]:
    """Return sorted list of available backend names."""
    return sorted(BACKEND_REGISTRY.keys())


__all__ = [
    "BACKEND_REGISTRY",
    "DEVICE_ALIASES",
    "ComputeBackend",
    "ComputeGraph",
    "CpuBackend",
    "TorchBackend",
    "available_backends",
    "create_backend",
    "resolve_device",
]
