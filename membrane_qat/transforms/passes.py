# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""
Transformation passes over a membrane tree.

Each pass comes in two forms: a ``TransformPass`` subclass usable inside a
``TransformPipeline`` and a function that runs it once on a root. All of
them share the traversal contract of ``run_pass``.
"""

from __future__ import annotations

from typing import List, Optional

import torch

from ..buffers.buffer_base import Buffer
from ..core.membrane import Membrane
from ..errors import InvalidArgs
from ..noise import uniform_noise
from .config import TransformConfig
from .evolution import EvolutionReport, apply_rules
from .precision import PrecisionDecision, QualityThresholdSelector
from .tiling import TileInspector, TileTransform, iter_tiles, reference_slice, reference_view
from .traversal import PassContext, TransformPass, run_pass


def perturb_within(values: torch.Tensor, noise: torch.Tensor, scale: float) -> None:
    """
    Add ``noise`` to ``values`` in place, never moving an element more than ``scale``.

    The sum is formed in float64 and rounded once to the buffer dtype. Where
    that rounding (half precision in particular) would leave
    ``[v0 - scale, v0 + scale]``, the element keeps its original value.
    """
    original = values.detach().to(torch.float64)
    candidate = (original + noise.to(torch.float64)).to(values.dtype)
    drift = (candidate.to(torch.float64) - original).abs()
    values.copy_(torch.where(drift <= scale, candidate, values))


class DataFreeQuantPass(TransformPass):
    """
    Simulate quantization error by injecting bounded uniform noise.

    The first config to reach a membrane is stored on it and kept; later
    passes with other configs leave it alone. Noise always comes from this
    pass's own config.
    """

    name = "data_free_quant"

    def __init__(self, config: TransformConfig, generator: Optional[torch.Generator] = None):
        if config is None:
            raise InvalidArgs("Data-free quantization requires a transform config")
        self.config = config
        self.generator = generator

    def visit(self, membrane: Membrane, context: PassContext) -> None:
        if membrane.transform_config is None:
            membrane.transform_config = self.config.replace()
            context.bump("configs_stored")

        scale = self.config.noise_scale
        for buffer in membrane.objects:
            values = buffer.as_mutable_float_slice()
            if values is None:
                context.bump("buffers_skipped")
                continue
            noise = uniform_noise(values.numel(), scale, self.generator)
            with torch.no_grad():
                perturb_within(values, noise, scale)
            context.bump("buffers_perturbed")
            context.bump("elements_perturbed", values.numel())


class TiledQuantPass(TransformPass):
    """
    Hand every float buffer to a tile transform, ``tile_size`` elements at a time.

    Without an explicit ``tile_fn`` the tiles are only inspected; buffers are
    rewritten only by an opt-in transform such as ``FakeQuantTile``.
    """

    name = "forward_tiled_quant"

    def __init__(
        self,
        config: TransformConfig,
        reference: Optional[Buffer] = None,
        tile_fn: Optional[TileTransform] = None,
    ):
        if config is None:
            raise InvalidArgs("Tiled quantization requires a transform config")
        self.config = config
        self.reference = reference
        self.tile_fn = tile_fn if tile_fn is not None else TileInspector()

    def begin(self, root: Membrane, context: PassContext) -> None:
        self._reference_values = (
            reference_view(self.reference) if self.config.use_reference else None
        )
        context.diagnostics["tile_size"] = self.config.tile_size
        context.diagnostics["use_reference"] = self._reference_values is not None

    def visit(self, membrane: Membrane, context: PassContext) -> None:
        tile_size = self.config.tile_size
        for buffer in membrane.objects:
            values = buffer.as_mutable_float_slice()
            if values is None:
                context.bump("buffers_skipped")
                continue
            with torch.no_grad():
                for start, end in iter_tiles(values.numel(), tile_size):
                    self.tile_fn(values[start:end], reference_slice(self._reference_values, start, end))
                    context.bump("tiles")
            context.bump("buffers_tiled")

    def end(self, root: Membrane, context: PassContext) -> None:
        summary = getattr(self.tile_fn, "summary", None)
        if callable(summary):
            context.diagnostics["tile_transform"] = summary()


class MixedPrecisionPass(TransformPass):
    """Record a precision choice for every buffer in the tree."""

    name = "mixed_precision_quant"

    def __init__(
        self,
        quality_threshold: float,
        selector: Optional[QualityThresholdSelector] = None,
    ):
        if quality_threshold is None or not 0.0 <= float(quality_threshold) <= 1.0:
            raise InvalidArgs(f"quality_threshold must lie in [0, 1], got {quality_threshold}")
        self.quality_threshold = float(quality_threshold)
        self.selector = selector or QualityThresholdSelector()
        self.decisions: List[PrecisionDecision] = []

    def begin(self, root: Membrane, context: PassContext) -> None:
        self.decisions = []
        context.diagnostics["quality_threshold"] = self.quality_threshold
        context.diagnostics["decisions"] = []

    def visit(self, membrane: Membrane, context: PassContext) -> None:
        for index, buffer in enumerate(membrane.objects):
            decision = self.selector.select(membrane.name, index, buffer, self.quality_threshold)
            self.decisions.append(decision)
            context.diagnostics["decisions"].append(decision.to_dict())
            context.bump("large_buffers" if decision.is_large else "small_buffers")
            if decision.skipped_reason:
                context.bump("buffers_skipped")


class EvolvePass(TransformPass):
    """Apply each membrane's evolution rules once per traversal."""

    name = "evolve"

    def __init__(self) -> None:
        self.report = EvolutionReport()

    def visit(self, membrane: Membrane, context: PassContext) -> None:
        if not membrane.rules:
            return
        context.bump("firings", apply_rules(membrane, self.report))

    def end(self, root: Membrane, context: PassContext) -> None:
        self.report.steps += 1
        context.diagnostics["steps"] = self.report.steps
        context.diagnostics["rule_firings"] = dict(self.report.firings)


def apply_data_free_quant(
    root: Membrane,
    config: TransformConfig,
    generator: Optional[torch.Generator] = None,
) -> PassContext:
    """Inject noise into every float buffer of the tree and store ``config`` where absent."""
    if root is None or config is None:
        raise InvalidArgs("apply_data_free_quant requires a root membrane and a config")
    return run_pass(root, DataFreeQuantPass(config, generator))


def forward_tiled_quant(
    root: Membrane,
    config: TransformConfig,
    reference: Optional[Buffer] = None,
    tile_fn: Optional[TileTransform] = None,
) -> PassContext:
    """Process every float buffer tile by tile, optionally against ``reference``."""
    if root is None or config is None:
        raise InvalidArgs("forward_tiled_quant requires a root membrane and a config")
    return run_pass(root, TiledQuantPass(config, reference, tile_fn))


def mixed_precision_quant(
    root: Membrane,
    quality_threshold: float,
    selector: Optional[QualityThresholdSelector] = None,
) -> PassContext:
    """Select a target precision per buffer; decisions land in the diagnostics."""
    if root is None:
        raise InvalidArgs("mixed_precision_quant requires a root membrane")
    return run_pass(root, MixedPrecisionPass(quality_threshold, selector))


def evolve(root: Membrane, steps: int = 1) -> PassContext:
    """Run ``steps`` evolution traversals. Trees without rules are not mutated."""
    if root is None:
        raise InvalidArgs("evolve requires a root membrane")
    if steps < 1:
        raise InvalidArgs(f"steps must be >= 1, got {steps}")
    evolve_pass = EvolvePass()
    context = run_pass(root, evolve_pass)
    for _ in range(steps - 1):
        context = run_pass(root, evolve_pass)
    return context
