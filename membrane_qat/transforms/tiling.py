# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""
Tile partitioning and per-tile transforms for forward tiled processing.

A buffer of ``n`` elements is split into ``ceil(n / tile_size)`` tiles; the
last tile may be short. Each tile is handed to a ``TileTransform`` together
with the matching slice of the reference buffer, when one is in use.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, Optional, Protocol, Tuple

import torch

from ..buffers.buffer_base import Buffer
from ..buffers.quantize import fake_quantize, symmetric_scale
from ..errors import InvalidArgs
from .config import QuantType


def iter_tiles(count: int, tile_size: int) -> Iterator[Tuple[int, int]]:
    """Yield ``(start, end)`` bounds covering ``range(count)``."""
    if tile_size <= 0:
        raise InvalidArgs(f"tile_size must be positive, got {tile_size}")
    for start in range(0, max(count, 0), tile_size):
        yield start, min(start + tile_size, count)


def num_tiles(count: int, tile_size: int) -> int:
    if tile_size <= 0:
        raise InvalidArgs(f"tile_size must be positive, got {tile_size}")
    return (max(count, 0) + tile_size - 1) // tile_size


def reference_slice(reference: Optional[torch.Tensor], start: int, end: int) -> Optional[torch.Tensor]:
    """Overlap of the reference with ``[start, end)``, or None when empty."""
    if reference is None or start >= reference.numel():
        return None
    return reference[start : min(end, reference.numel())]


def reference_view(reference: Optional[Buffer]) -> Optional[torch.Tensor]:
    """Float view of a reference buffer; non-float references are ignored."""
    if reference is None:
        return None
    return reference.as_mutable_float_slice()


class TileTransform(Protocol):
    """Callable applied to each tile in place."""

    def __call__(self, tile: torch.Tensor, reference: Optional[torch.Tensor]) -> None:
        ...


class TileInspector:
    """
    Default tile transform: observe tiles without writing to them.

    Counts tiles and elements and, where a reference slice overlaps the tile,
    tracks the largest absolute difference between the two.
    """

    name = "inspect"

    def __init__(self) -> None:
        self.tiles = 0
        self.elements = 0
        self.referenced_tiles = 0
        self.max_reference_delta = 0.0

    def __call__(self, tile: torch.Tensor, reference: Optional[torch.Tensor]) -> None:
        self.tiles += 1
        self.elements += tile.numel()
        if reference is None or reference.numel() == 0:
            return
        self.referenced_tiles += 1
        overlap = tile[: reference.numel()].detach().to(torch.float32)
        delta = (overlap - reference.detach().to(torch.float32)).abs().max()
        self.max_reference_delta = max(self.max_reference_delta, float(delta.item()))

    def summary(self) -> Dict[str, Any]:
        return {
            "transform": self.name,
            "tiles": self.tiles,
            "elements": self.elements,
            "referenced_tiles": self.referenced_tiles,
            "max_reference_delta": self.max_reference_delta,
        }


class FakeQuantTile:
    """
    Opt-in tile transform: simulate ``target_type`` on each tile in place.

    Integer targets use symmetric quantize/dequantize; the scale comes from
    the reference slice when one is given, otherwise from the tile itself.
    F16 rounds through half precision. F32 leaves the tile unchanged.
    """

    name = "fake_quant"

    def __init__(self, target_type: QuantType) -> None:
        self.target_type = QuantType.parse(target_type)
        self.tiles = 0
        self.referenced_tiles = 0
        self.max_abs_error = 0.0

    def __call__(self, tile: torch.Tensor, reference: Optional[torch.Tensor]) -> None:
        self.tiles += 1
        if reference is not None:
            self.referenced_tiles += 1
        if self.target_type is QuantType.F32 or tile.numel() == 0:
            return

        before = tile.detach().to(torch.float32).clone()
        if self.target_type is QuantType.F16:
            tile.copy_(tile.to(torch.float16).to(tile.dtype))
        else:
            bits = self.target_type.bits
            source = reference if reference is not None and reference.numel() else tile
            fake_quantize(tile, bits, symmetric_scale(source, bits))

        error = float((before - tile.detach().to(torch.float32)).abs().max().item())
        self.max_abs_error = max(self.max_abs_error, error)

    def summary(self) -> Dict[str, Any]:
        return {
            "transform": self.name,
            "target_type": self.target_type.value,
            "tiles": self.tiles,
            "referenced_tiles": self.referenced_tiles,
            "max_abs_error": self.max_abs_error,
        }


TILE_TRANSFORMS = (TileInspector.name, FakeQuantTile.name)


def make_tile_transform(name: str, target_type: QuantType) -> TileTransform:
    """Build a tile transform by name: ``inspect`` or ``fake_quant``."""
    canonical = (name or "").strip().lower()
    if canonical == TileInspector.name:
        return TileInspector()
    if canonical == FakeQuantTile.name:
        return FakeQuantTile(target_type)
    raise InvalidArgs(
        f"Unknown tile transform '{name}'. Available tile transforms: {', '.join(TILE_TRANSFORMS)}"
    )
