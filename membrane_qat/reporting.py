# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Read-only statistics for membranes and namespaces."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple

if TYPE_CHECKING:
    from .core.membrane import Membrane
    from .core.namespace import Namespace


@dataclass(frozen=True)
class MembraneStats:
    """Snapshot of one membrane for external reporters."""

    name: str
    level: int
    num_objects: int
    max_objects: int
    num_children: int
    max_children: int
    num_rules: int
    max_rules: int
    has_transform: bool
    noise_scale: Optional[float] = None
    target_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "level": self.level,
            "objects": [self.num_objects, self.max_objects],
            "children": [self.num_children, self.max_children],
            "rules": [self.num_rules, self.max_rules],
            "transform": (
                {"noise_scale": self.noise_scale, "target_type": self.target_type}
                if self.has_transform
                else None
            ),
        }


@dataclass(frozen=True)
class NamespaceStats:
    """Snapshot of namespace-level statistics."""

    name: str
    total_params: int
    quantized_params: int
    compression_ratio: float
    target_bits: int
    mixed_precision: bool
    has_root: bool
    backend: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "total_params": self.total_params,
            "quantized_params": self.quantized_params,
            "compression_ratio": self.compression_ratio,
            "target_bits": self.target_bits,
            "mixed_precision": self.mixed_precision,
            "has_root": self.has_root,
            "backend": self.backend,
        }


def format_membrane_stats(stats: MembraneStats) -> str:
    lines = [
        f"Membrane '{stats.name}' (Level {stats.level}):",
        f"  Objects: {stats.num_objects}/{stats.max_objects}",
        f"  Children: {stats.num_children}/{stats.max_children}",
        f"  Rules: {stats.num_rules}/{stats.max_rules}",
    ]
    if stats.has_transform:
        lines.append(
            f"  QAT: enabled (noise={stats.noise_scale:.3f}, type={stats.target_type})"
        )
    return "\n".join(lines)


def format_namespace_stats(stats: NamespaceStats) -> str:
    return "\n".join(
        [
            f"Namespace '{stats.name}':",
            f"  Total params: {stats.total_params}",
            f"  Quantized params: {stats.quantized_params}",
            f"  Compression ratio: {stats.compression_ratio:.2f}x",
            f"  Target bits: {stats.target_bits}",
            f"  Mixed precision: {'enabled' if stats.mixed_precision else 'disabled'}",
        ]
    )


def format_tree(root: "Membrane") -> str:
    """Render every membrane of a tree in preorder, indented by depth."""
    blocks: List[str] = []
    for membrane in root.iter_preorder():
        indent = "  " * membrane.depth()
        text = format_membrane_stats(membrane.stats())
        blocks.append("\n".join(indent + line for line in text.splitlines()))
    return "\n".join(blocks)


def count_parameters(root: "Membrane") -> Tuple[int, int]:
    """
    Return (total elements, float elements) over every buffer in the tree.

    Namespaces never derive their statistics; callers use this to fill
    ``Namespace.update_statistics``.
    """
    total = 0
    floating = 0
    for membrane in root.iter_preorder():
        for buffer in membrane.objects:
            count = buffer.element_count()
            total += count
            if buffer.element_type().is_float:
                floating += count
    return total, floating


def collect_stats(membranes: Iterable["Membrane"]) -> List[Dict[str, Any]]:
    return [membrane.stats().to_dict() for membrane in membranes]


def namespace_report(namespace: "Namespace") -> Dict[str, Any]:
    """JSON-friendly report of a namespace and its tree."""
    report: Dict[str, Any] = {"namespace": namespace.stats().to_dict(), "membranes": []}
    if namespace.root is not None:
        report["membranes"] = collect_stats(namespace.root.iter_preorder())
    return report
