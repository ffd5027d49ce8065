# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Backend that runs fx graphs with eager PyTorch."""

from __future__ import annotations

from typing import Any

import torch

from ..errors import ExecError
from .backend_base import ComputeBackend, ComputeGraph


def _move(value: Any, device: torch.device) -> Any:
    if isinstance(value, torch.Tensor):
        return value.to(device)
    if isinstance(value, (list, tuple)):
        return type(value)(_move(item, device) for item in value)
    if isinstance(value, dict):
        return {key: _move(item, device) for key, item in value.items()}
    return value


class TorchBackend(ComputeBackend):
    """Execute graphs on a torch device without autograd."""

    name = "torch"
    display_name = "PyTorch (eager)"

    def __init__(self, device: str = "cpu", num_threads: int = 0) -> None:
        try:
            self.device = torch.device(device)
        except RuntimeError as exc:
            raise ValueError(f"Invalid torch device '{device}': {exc}") from exc
        self.num_threads = int(num_threads)
        self.executions = 0

    def execute(self, graph: ComputeGraph) -> None:
        if self.num_threads > 0:
            torch.set_num_threads(self.num_threads)
        try:
            module = graph.module.to(self.device)
            inputs = _move(graph.inputs, self.device)
            with torch.no_grad():
                graph.outputs = module(*inputs)
        except Exception as exc:
            raise ExecError(f"Backend '{self.name}' failed to execute '{graph.name}': {exc}") from exc
        self.executions += 1


class CpuBackend(TorchBackend):
    name = "cpu"
    display_name = "PyTorch CPU"

    def __init__(self, num_threads: int = 0) -> None:
        super().__init__(device="cpu", num_threads=num_threads)
