# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""
Membrane tree nodes.

Ownership model:
  - a membrane owns its children (strict tree, no sharing, no cycles)
  - buffers are borrowed; the allocation context that made them frees them
  - ``parent`` and ``namespace`` are weak references and never keep their
    target alive
"""

from __future__ import annotations

import weakref
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, List, Optional

from ..buffers.allocation import AllocationContext
from ..buffers.buffer_base import Buffer
from ..errors import CapacityExceeded, InvalidArgs
from ..reporting import MembraneStats

if TYPE_CHECKING:
    from ..transforms.config import TransformConfig
    from ..transforms.evolution import EvolutionRule
    from .namespace import Namespace

NAME_MAX = 64
DEFAULT_MAX_CHILDREN = 16
DEFAULT_MAX_OBJECTS = 256
DEFAULT_MAX_RULES = 64


def bounded_name(name: Optional[str], default: str) -> str:
    """Clamp identifiers to NAME_MAX - 1 characters."""
    text = default if name is None else str(name)
    return text[: NAME_MAX - 1]


@dataclass(frozen=True)
class TeardownReport:
    """What a ``Membrane.free`` call released."""

    nodes_released: int = 0
    configs_released: int = 0

    def __add__(self, other: "TeardownReport") -> "TeardownReport":
        return TeardownReport(
            nodes_released=self.nodes_released + other.nodes_released,
            configs_released=self.configs_released + other.configs_released,
        )


class Membrane:
    """A node holding child membranes, borrowed buffers and rules."""

    def __init__(
        self,
        name: Optional[str],
        level: int = 0,
        ctx: Optional[AllocationContext] = None,
        *,
        max_children: int = DEFAULT_MAX_CHILDREN,
        max_objects: int = DEFAULT_MAX_OBJECTS,
        max_rules: int = DEFAULT_MAX_RULES,
    ) -> None:
        if ctx is not None:
            ctx.ensure_alive()
        if level is None or int(level) < 0:
            raise InvalidArgs(f"Membrane level must be non-negative, got {level}")
        for label, value in (
            ("max_children", max_children),
            ("max_objects", max_objects),
            ("max_rules", max_rules),
        ):
            if int(value) <= 0:
                raise InvalidArgs(f"{label} must be positive, got {value}")

        self.name = bounded_name(name, "unnamed")
        self.level = int(level)
        self.ctx = ctx
        self.max_children = int(max_children)
        self.max_objects = int(max_objects)
        self.max_rules = int(max_rules)

        self.children: List[Membrane] = []
        self.objects: List[Buffer] = []
        self.rules: List["EvolutionRule"] = []
        self.transform_config: Optional["TransformConfig"] = None

        self._parent_ref: Optional[weakref.ref] = None
        self._namespace_ref: Optional[weakref.ref] = None
        self._freed = False

    def __repr__(self) -> str:
        return (
            f"Membrane(name={self.name!r}, level={self.level}, "
            f"children={len(self.children)}, objects={len(self.objects)})"
        )

    # ------------------------------------------------------------------
    # Weak back-references
    # ------------------------------------------------------------------

    @property
    def parent(self) -> Optional["Membrane"]:
        return self._parent_ref() if self._parent_ref is not None else None

    @property
    def namespace(self) -> Optional["Namespace"]:
        return self._namespace_ref() if self._namespace_ref is not None else None

    @namespace.setter
    def namespace(self, value: Optional["Namespace"]) -> None:
        self._namespace_ref = weakref.ref(value) if value is not None else None

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    @property
    def num_children(self) -> int:
        return len(self.children)

    @property
    def num_objects(self) -> int:
        return len(self.objects)

    @property
    def num_rules(self) -> int:
        return len(self.rules)

    @property
    def is_freed(self) -> bool:
        return self._freed

    def _ensure_live(self) -> None:
        if self._freed:
            raise InvalidArgs(f"Membrane '{self.name}' has been freed")

    def add_child(self, child: "Membrane") -> None:
        """
        Attach ``child`` as the last child of this membrane.

        The child's namespace becomes a snapshot of this membrane's namespace
        at attach time; later namespace changes reach it only through
        ``Namespace.set_root``.
        """
        self._ensure_live()
        if child is None:
            raise InvalidArgs("add_child requires a child membrane")
        child._ensure_live()
        if child is self:
            raise InvalidArgs(f"Membrane '{self.name}' cannot contain itself")
        if child.parent is not None:
            raise InvalidArgs(
                f"Membrane '{child.name}' is already a child of '{child.parent.name}'"
            )
        ancestor = self.parent
        while ancestor is not None:
            if ancestor is child:
                raise InvalidArgs(
                    f"Attaching '{child.name}' under '{self.name}' would create a cycle"
                )
            ancestor = ancestor.parent
        if len(self.children) >= self.max_children:
            raise CapacityExceeded("children", self.max_children, self.name)

        self.children.append(child)
        child._parent_ref = weakref.ref(self)
        child._namespace_ref = self._namespace_ref

    def add_object(self, buffer: Buffer) -> None:
        """Append a borrowed buffer reference."""
        self._ensure_live()
        if buffer is None:
            raise InvalidArgs("add_object requires a buffer")
        if len(self.objects) >= self.max_objects:
            raise CapacityExceeded("objects", self.max_objects, self.name)
        self.objects.append(buffer)

    def add_rule(self, rule: "EvolutionRule") -> None:
        """Append an evolution rule applied by ``evolve``."""
        self._ensure_live()
        if rule is None:
            raise InvalidArgs("add_rule requires a rule")
        if len(self.rules) >= self.max_rules:
            raise CapacityExceeded("rules", self.max_rules, self.name)
        self.rules.append(rule)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def iter_preorder(self) -> Iterator["Membrane"]:
        """Yield this membrane, then each subtree in insertion order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def iter_postorder(self) -> Iterator["Membrane"]:
        """Yield every subtree in insertion order, then this membrane."""
        for child in self.children:
            yield from child.iter_postorder()
        yield self

    def depth(self) -> int:
        depth = 0
        node = self.parent
        while node is not None:
            depth += 1
            node = node.parent
        return depth

    def root(self) -> "Membrane":
        node = self
        while node.parent is not None:
            node = node.parent
        return node

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def free(self) -> TeardownReport:
        """
        Release this membrane and everything it owns.

        Children are released first (postorder), then the stored transform
        config, then the node's own arrays. Borrowed buffers, the parent and
        the namespace are left untouched. Never raises.
        """
        if self._freed:
            return TeardownReport()

        report = TeardownReport()
        for child in self.children:
            if child is not None:
                report = report + child.free()

        configs = 0
        if self.transform_config is not None:
            self.transform_config = None
            configs = 1

        self.children = []
        self.objects = []
        self.rules = []
        self._freed = True
        return report + TeardownReport(nodes_released=1, configs_released=configs)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def stats(self) -> MembraneStats:
        config = self.transform_config
        return MembraneStats(
            name=self.name,
            level=self.level,
            num_objects=len(self.objects),
            max_objects=self.max_objects,
            num_children=len(self.children),
            max_children=self.max_children,
            num_rules=len(self.rules),
            max_rules=self.max_rules,
            has_transform=config is not None,
            noise_scale=config.noise_scale if config is not None else None,
            target_type=config.target_type.value if config is not None else None,
        )
