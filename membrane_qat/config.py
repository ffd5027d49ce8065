# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""
Run configuration.

Defaults live in OmegaConf structured configs; a YAML file and dotlist
overrides (``transform.noise_scale=0.02``) are merged on top. The backend
entry is either a registry name (``cpu``) or a node with a ``_target_``
that hydra instantiates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Sequence, Union

import torch
from hydra.utils import instantiate
from omegaconf import DictConfig, OmegaConf
from omegaconf.errors import OmegaConfBaseException

from .backends import ComputeBackend, create_backend
from .buffers.buffer_base import Buffer
from .core.namespace import Namespace
from .errors import InvalidArgs
from .transforms.config import TransformConfig
from .transforms.passes import DataFreeQuantPass, EvolvePass, MixedPrecisionPass, TiledQuantPass
from .transforms.tiling import TILE_TRANSFORMS, make_tile_transform
from .transforms.traversal import TransformPass, TransformPipeline

PASS_NAMES = (
    DataFreeQuantPass.name,
    EvolvePass.name,
    MixedPrecisionPass.name,
    TiledQuantPass.name,
)

# Data-free quantization first, tiled processing last.
DEFAULT_PASSES = (
    DataFreeQuantPass.name,
    EvolvePass.name,
    MixedPrecisionPass.name,
    TiledQuantPass.name,
)


@dataclass
class TransformSection:
    target_type: str = "q4_k"
    noise_scale: float = 0.05
    per_channel: bool = True
    mixed_precision: bool = False
    temperature: float = 1.0
    num_steps: int = 100
    learning_rate: float = 0.001
    tile_size: int = 3
    use_reference: bool = True


@dataclass
class NamespaceSection:
    name: str = "ml_workspace"
    noise_scale: float = 0.1
    target_bits: int = 8
    mixed_precision: bool = False


@dataclass
class TreeSection:
    max_children: int = 16
    max_objects: int = 256


@dataclass
class RunConfig:
    namespace: NamespaceSection = field(default_factory=NamespaceSection)
    transform: TransformSection = field(default_factory=TransformSection)
    tree: TreeSection = field(default_factory=TreeSection)
    passes: List[str] = field(default_factory=lambda: list(DEFAULT_PASSES))
    quality_threshold: float = 0.95
    evolve_steps: int = 1
    # "inspect" leaves buffers untouched; "fake_quant" rewrites each tile.
    tile_transform: str = "inspect"
    seed: int = 12345
    backend: Any = "cpu"


def load_run_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Sequence[str] = (),
) -> DictConfig:
    """Merge defaults, an optional YAML file and dotlist overrides."""
    layers = [OmegaConf.structured(RunConfig)]
    try:
        if path is not None:
            layers.append(OmegaConf.load(str(path)))
        if overrides:
            layers.append(OmegaConf.from_dotlist(list(overrides)))
        cfg = OmegaConf.merge(*layers)
    except OmegaConfBaseException as exc:
        raise InvalidArgs(f"Invalid run configuration: {exc}") from exc

    unknown = [name for name in cfg.passes if name not in PASS_NAMES]
    if unknown:
        raise InvalidArgs(
            f"Unknown passes: {', '.join(unknown)}. Available passes: {', '.join(PASS_NAMES)}"
        )
    if cfg.evolve_steps < 1:
        raise InvalidArgs(f"evolve_steps must be >= 1, got {cfg.evolve_steps}")
    if str(cfg.tile_transform).strip().lower() not in TILE_TRANSFORMS:
        raise InvalidArgs(
            f"Unknown tile transform: {cfg.tile_transform}. "
            f"Available tile transforms: {', '.join(TILE_TRANSFORMS)}"
        )
    return cfg


def transform_config_from(cfg: DictConfig) -> TransformConfig:
    return TransformConfig.from_dict(OmegaConf.to_container(cfg.transform, resolve=True))


def build_backend(cfg: DictConfig) -> Optional[ComputeBackend]:
    """Create the configured backend; ``None``/``"none"`` disables it."""
    backend_cfg = cfg.backend
    if backend_cfg is None:
        return None
    if isinstance(backend_cfg, str):
        if backend_cfg.strip().lower() == "none":
            return None
        try:
            return create_backend(backend_cfg)
        except ValueError as exc:
            raise InvalidArgs(str(exc)) from exc
    backend = instantiate(backend_cfg)
    if not isinstance(backend, ComputeBackend):
        raise InvalidArgs(f"Configured backend is not a ComputeBackend: {type(backend).__name__}")
    return backend


def build_namespace(cfg: DictConfig, backend: Optional[ComputeBackend] = None) -> Namespace:
    section = cfg.namespace
    namespace = Namespace(section.name, backend)
    namespace.noise_scale = float(section.noise_scale)
    namespace.target_bits = int(section.target_bits)
    namespace.mixed_precision = bool(section.mixed_precision)
    return namespace


def build_pipeline(
    cfg: DictConfig,
    reference: Optional[Buffer] = None,
    generator: Optional[torch.Generator] = None,
) -> TransformPipeline:
    """Instantiate the configured passes in order."""
    transform = transform_config_from(cfg)
    passes: List[TransformPass] = []
    for name in cfg.passes:
        if name == DataFreeQuantPass.name:
            passes.append(DataFreeQuantPass(transform, generator))
        elif name == TiledQuantPass.name:
            tile_fn = make_tile_transform(cfg.tile_transform, transform.target_type)
            passes.append(TiledQuantPass(transform, reference, tile_fn))
        elif name == MixedPrecisionPass.name:
            passes.append(MixedPrecisionPass(cfg.quality_threshold))
        elif name == EvolvePass.name:
            evolve_pass = EvolvePass()
            passes.extend([evolve_pass] * int(cfg.evolve_steps))
        else:
            raise InvalidArgs(f"Unknown pass: {name}")
    return TransformPipeline(passes)
