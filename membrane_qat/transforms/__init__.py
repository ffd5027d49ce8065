# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Transform configs, the traversal engine and the passes built on it."""

from .config import QuantType, TransformConfig
from .evolution import EvolutionReport, EvolutionRule, clamp_rule, scale_rule
from .passes import (
    DataFreeQuantPass,
    EvolvePass,
    MixedPrecisionPass,
    TiledQuantPass,
    apply_data_free_quant,
    evolve,
    forward_tiled_quant,
    mixed_precision_quant,
)
from .precision import (
    LARGE_BUFFER_THRESHOLD,
    PrecisionDecision,
    QualityThresholdSelector,
    estimate_quality,
    is_large_buffer,
)
from .tiling import (
    TILE_TRANSFORMS,
    FakeQuantTile,
    TileInspector,
    TileTransform,
    iter_tiles,
    make_tile_transform,
    num_tiles,
)
from .traversal import (
    PassContext,
    PipelineReport,
    TransformPass,
    TransformPipeline,
    iter_preorder,
    run_pass,
)

__all__ = [
    "LARGE_BUFFER_THRESHOLD",
    "TILE_TRANSFORMS",
    "DataFreeQuantPass",
    "EvolutionReport",
    "EvolutionRule",
    "EvolvePass",
    "FakeQuantTile",
    "MixedPrecisionPass",
    "PassContext",
    "PipelineReport",
    "PrecisionDecision",
    "QualityThresholdSelector",
    "QuantType",
    "TileInspector",
    "TileTransform",
    "TiledQuantPass",
    "TransformConfig",
    "TransformPass",
    "TransformPipeline",
    "apply_data_free_quant",
    "clamp_rule",
    "estimate_quality",
    "evolve",
    "forward_tiled_quant",
    "is_large_buffer",
    "iter_preorder",
    "iter_tiles",
    "make_tile_transform",
    "mixed_precision_quant",
    "num_tiles",
    "run_pass",
    "scale_rule",
]
