# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Exception hierarchy shared by the membrane tree, passes and backends."""

from __future__ import annotations


class MembraneError(RuntimeError):
    """Base class for all membrane-qat errors."""


class AllocationFailed(MembraneError, MemoryError):
    """Raised when an allocation context cannot provide storage."""


class CapacityExceeded(MembraneError):
    """Raised when a child, object or rule array is full.

    The failing call leaves the membrane unchanged, so callers may retry
    against a different node or with a larger capacity.
    """

    def __init__(self, kind: str, capacity: int, owner: str = "") -> None:
        self.kind = kind
        self.capacity = capacity
        self.owner = owner
        where = f" on membrane '{owner}'" if owner else ""
        super().__init__(f"Cannot add more {kind}{where}: capacity {capacity} reached")


class InvalidArgs(MembraneError, ValueError):
    """Raised when a required argument is missing or structurally invalid."""


class NullRoot(InvalidArgs):
    """Raised when a namespace is given no root membrane."""


class ExecError(MembraneError):
    """Raised when a compute backend fails to execute a graph."""


__all__ = [
    "AllocationFailed",
    "CapacityExceeded",
    "ExecError",
    "InvalidArgs",
    "MembraneError",
    "NullRoot",
]
