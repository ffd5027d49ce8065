# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""
Shared traversal engine for transformation passes.

Every pass walks the tree depth-first in preorder: a membrane is handled
before its children, and children are visited in insertion order. A failing
visit stops the walk; nodes already visited keep their changes.
"""

from __future__ import annotations

import logging
from logging import Logger
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List

from ..core.membrane import Membrane
from ..errors import InvalidArgs

logger: Logger = logging.getLogger(__name__)


def iter_preorder(root: Membrane) -> Iterator[Membrane]:
    if root is None:
        raise InvalidArgs("Traversal requires a root membrane")
    return root.iter_preorder()


@dataclass
class PassContext:
    """Mutable record of one pass over one tree."""

    pass_name: str
    visited: List[str] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    elapsed_s: float = 0.0

    @property
    def nodes_visited(self) -> int:
        return len(self.visited)

    def bump(self, key: str, amount: int = 1) -> None:
        """Increment an integer diagnostic counter."""
        self.diagnostics[key] = self.diagnostics.get(key, 0) + amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pass": self.pass_name,
            "visited": list(self.visited),
            "diagnostics": dict(self.diagnostics),
            "elapsed_s": self.elapsed_s,
        }


class TransformPass(ABC):
    """Base class for passes applied to every membrane of a tree."""

    name = "unnamed_pass"

    def begin(self, root: Membrane, context: PassContext) -> None:
        """Hook called once before the first visit."""

    @abstractmethod
    def visit(self, membrane: Membrane, context: PassContext) -> None:
        """Act on one membrane's own state. Children are visited separately."""

    def end(self, root: Membrane, context: PassContext) -> None:
        """Hook called once after the last visit."""


def run_pass(root: Membrane, transform_pass: TransformPass) -> PassContext:
    """Apply ``transform_pass`` to ``root`` and all descendants in preorder."""
    if root is None:
        raise InvalidArgs(f"Pass '{getattr(transform_pass, 'name', '?')}' requires a root membrane")
    if transform_pass is None:
        raise InvalidArgs("run_pass requires a pass")

    context = PassContext(pass_name=transform_pass.name)
    start_s = time.perf_counter()
    transform_pass.begin(root, context)
    for membrane in iter_preorder(root):
        context.visited.append(membrane.name)
        transform_pass.visit(membrane, context)
    transform_pass.end(root, context)
    context.elapsed_s = time.perf_counter() - start_s

    logger.debug(
        "%s visited %d membranes in %.4fs: %s",
        context.pass_name,
        context.nodes_visited,
        context.elapsed_s,
        context.diagnostics,
    )
    return context


@dataclass
class PipelineReport:
    """Results of running a pipeline of passes against one tree."""

    contexts: List[PassContext] = field(default_factory=list)
    stage_timings: Dict[str, float] = field(default_factory=dict)
    stage_order: List[str] = field(default_factory=list)

    def add(self, context: PassContext) -> None:
        self.contexts.append(context)
        self.stage_timings[context.pass_name] = context.elapsed_s
        self.stage_order.append(context.pass_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stages": [ctx.to_dict() for ctx in self.contexts],
            "stage_order": list(self.stage_order),
        }


class TransformPipeline:
    """Run a list of passes in order against the same root."""

    def __init__(self, passes: Iterable[TransformPass]):
        self.passes = list(passes)

    def run(self, root: Membrane) -> PipelineReport:
        if root is None:
            raise InvalidArgs("Pipeline requires a root membrane")
        report = PipelineReport()
        for transform_pass in self.passes:
            context = run_pass(root, transform_pass)
            report.add(context)
            logger.info("[pipeline] %s: %.3fs", context.pass_name, context.elapsed_s)
        return report
