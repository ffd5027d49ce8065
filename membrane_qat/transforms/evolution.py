# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""
Rule-based object rewriting for ``evolve``.

A rule is a ``(pattern, action)`` pair attached to a membrane. One
evolution step walks the tree in preorder; inside a membrane, rules run by
descending priority (ties keep insertion order) and each rule fires once on
every object it matches, objects taken in insertion order. A membrane
without rules is left untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

import torch

from ..buffers.buffer_base import Buffer
from ..errors import InvalidArgs

if TYPE_CHECKING:
    from ..core.membrane import Membrane

Pattern = Callable[["Membrane", Buffer], bool]
Action = Callable[["Membrane", Buffer], None]


@dataclass(frozen=True)
class EvolutionRule:
    """Rewrite ``action`` applied to every object matching ``pattern``."""

    name: str
    pattern: Pattern
    action: Action
    priority: int = 0

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidArgs("Evolution rules need a name")
        if not callable(self.pattern) or not callable(self.action):
            raise InvalidArgs(f"Rule '{self.name}' needs callable pattern and action")


@dataclass
class EvolutionReport:
    steps: int = 0
    firings: Dict[str, int] = field(default_factory=dict)

    @property
    def total_firings(self) -> int:
        return sum(self.firings.values())

    def record(self, rule: EvolutionRule) -> None:
        self.firings[rule.name] = self.firings.get(rule.name, 0) + 1


def ordered_rules(rules: List[EvolutionRule]) -> List[EvolutionRule]:
    # sorted() is stable, so equal priorities keep insertion order.
    return sorted(rules, key=lambda rule: -rule.priority)


def apply_rules(membrane: "Membrane", report: EvolutionReport) -> int:
    """Run one step of ``membrane``'s own rules. Returns the firing count."""
    fired = 0
    objects = list(membrane.objects)
    for rule in ordered_rules(membrane.rules):
        for buffer in objects:
            if rule.pattern(membrane, buffer):
                rule.action(membrane, buffer)
                report.record(rule)
                fired += 1
    return fired


def is_float_buffer(membrane: "Membrane", buffer: Buffer) -> bool:
    return buffer.element_type().is_float


def scale_rule(
    name: str,
    factor: float,
    pattern: Optional[Pattern] = None,
    priority: int = 0,
) -> EvolutionRule:
    """Multiply matching float buffers by ``factor`` in place."""

    def action(membrane: "Membrane", buffer: Buffer) -> None:
        values = buffer.as_mutable_float_slice()
        if values is not None:
            with torch.no_grad():
                values.mul_(factor)

    return EvolutionRule(name=name, pattern=pattern or is_float_buffer, action=action, priority=priority)


def clamp_rule(
    name: str,
    limit: float,
    pattern: Optional[Pattern] = None,
    priority: int = 0,
) -> EvolutionRule:
    """Clamp matching float buffers to ``[-limit, limit]`` in place."""
    if limit < 0:
        raise InvalidArgs(f"Clamp limit must be non-negative, got {limit}")

    def action(membrane: "Membrane", buffer: Buffer) -> None:
        values = buffer.as_mutable_float_slice()
        if values is not None:
            with torch.no_grad():
                values.clamp_(-limit, limit)

    return EvolutionRule(name=name, pattern=pattern or is_float_buffer, action=action, priority=priority)
