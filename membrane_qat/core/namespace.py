# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Namespace: one membrane tree plus a backend handle and statistics."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from ..errors import InvalidArgs, NullRoot
from ..reporting import NamespaceStats
from .membrane import Membrane, bounded_name

if TYPE_CHECKING:
    from ..backends.backend_base import ComputeBackend, ComputeGraph

DEFAULT_NOISE_SCALE = 0.1
DEFAULT_TARGET_BITS = 8


def propagate_namespace(root: Membrane, namespace: "Namespace") -> int:
    """Point every membrane under ``root`` (inclusive) at ``namespace``.

    Overwrites whatever namespace each node held before. Returns the number
    of membranes updated.
    """
    updated = 0
    for membrane in root.iter_preorder():
        membrane.namespace = namespace
        updated += 1
    return updated


class Namespace:
    """
    Aggregate of one membrane tree, a compute backend and bookkeeping.

    The namespace references its root but does not manage the tree's
    lifetime: ``free`` on a namespace never frees membranes, and freeing the
    root membrane is the caller's job.
    """

    def __init__(self, name: Optional[str], backend: Optional["ComputeBackend"] = None) -> None:
        self.name = bounded_name(name, "default")
        self.root: Optional[Membrane] = None
        self.backend = backend

        # Namespace-level defaults; passes take their own TransformConfig.
        self.noise_scale = DEFAULT_NOISE_SCALE
        self.target_bits = DEFAULT_TARGET_BITS
        self.mixed_precision = False

        # Caller-maintained statistics.
        self.total_params = 0
        self.quantized_params = 0
        self.compression_ratio = 1.0

    def __repr__(self) -> str:
        root = self.root.name if self.root is not None else None
        return f"Namespace(name={self.name!r}, root={root!r})"

    def set_root(self, root: Membrane) -> None:
        """Adopt ``root`` and propagate this namespace through its tree.

        Replacing an existing root does not free the previous tree.
        """
        if root is None:
            raise NullRoot(f"Namespace '{self.name}' requires a root membrane")
        self.root = root
        propagate_namespace(root, self)

    def compute(self, graph: "ComputeGraph") -> None:
        """Forward a pre-built graph to the backend.

        Without a backend this is a no-op. Backend failures surface as
        ``ExecError`` unchanged.
        """
        if graph is None:
            raise InvalidArgs("compute requires a graph")
        if self.backend is None:
            return
        self.backend.execute(graph)

    def update_statistics(
        self,
        total_params: int,
        quantized_params: int,
        compression_ratio: float,
    ) -> None:
        if total_params < 0 or quantized_params < 0:
            raise InvalidArgs("Parameter counts must be non-negative")
        if quantized_params > total_params:
            raise InvalidArgs(
                f"quantized_params ({quantized_params}) exceeds total_params ({total_params})"
            )
        if compression_ratio <= 0:
            raise InvalidArgs(f"compression_ratio must be positive, got {compression_ratio}")
        self.total_params = int(total_params)
        self.quantized_params = int(quantized_params)
        self.compression_ratio = float(compression_ratio)

    def free(self) -> None:
        """Drop this namespace's own references. The tree is left intact."""
        self.root = None
        self.backend = None

    def stats(self) -> NamespaceStats:
        backend_name = getattr(self.backend, "name", None) if self.backend is not None else None
        return NamespaceStats(
            name=self.name,
            total_params=self.total_params,
            quantized_params=self.quantized_params,
            compression_ratio=self.compression_ratio,
            target_bits=self.target_bits,
            mixed_precision=self.mixed_precision,
            has_root=self.root is not None,
            backend=backend_name,
        )
