# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Backend execution capability and the graphs it runs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

import torch
import torch.fx
import torch.nn as nn


@dataclass
class ComputeGraph:
    """
    A pre-built computation graph with bound inputs.

    Backends only execute graphs; building and partitioning them happens
    elsewhere. ``outputs`` holds the result of the most recent execution.
    """

    module: torch.fx.GraphModule
    inputs: Tuple[Any, ...] = field(default_factory=tuple)
    outputs: Optional[Any] = None
    name: str = "graph"

    @classmethod
    def trace(cls, module: nn.Module, *inputs: Any, name: Optional[str] = None) -> "ComputeGraph":
        """Symbolically trace ``module`` into a GraphModule bound to ``inputs``."""
        graph_module = torch.fx.symbolic_trace(module)
        return cls(module=graph_module, inputs=tuple(inputs), name=name or type(module).__name__)

    @property
    def num_nodes(self) -> int:
        return len(self.module.graph.nodes)


class ComputeBackend(ABC):
    """Minimal backend contract used by namespaces."""

    name = "backend_base"
    display_name = "Generic Backend"

    @abstractmethod
    def execute(self, graph: ComputeGraph) -> None:
        """Run ``graph`` and store its outputs. Raise ExecError on failure."""
