# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Build membrane trees from parameter checkpoints and write them back."""

from __future__ import annotations

from collections import OrderedDict
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple, Union

import torch
from safetensors.torch import load_file, save_file

from .buffers.allocation import AllocationContext
from .buffers.torch_buffer import TorchBuffer
from .core.membrane import DEFAULT_MAX_CHILDREN, DEFAULT_MAX_OBJECTS, Membrane
from .errors import InvalidArgs


def _split_key(key: str) -> Tuple[Tuple[str, ...], str]:
    parts = [part for part in key.split(".") if part]
    if not parts:
        raise InvalidArgs(f"Invalid parameter name: {key!r}")
    return tuple(parts[:-1]), parts[-1]


def build_tree_from_state_dict(
    state_dict: Mapping[str, torch.Tensor],
    root_name: str = "model",
    ctx: Optional[AllocationContext] = None,
    *,
    max_children: int = DEFAULT_MAX_CHILDREN,
    max_objects: int = DEFAULT_MAX_OBJECTS,
) -> Membrane:
    """
    Map dotted parameter names onto a membrane tree.

    ``encoder.layers.0.weight`` lands as buffer ``weight`` in membrane
    ``encoder/layers/0``; every prefix component becomes one membrane whose
    level is its depth. Tensors are borrowed: the caller keeps
    ``state_dict`` (or its tensors) alive for as long as the tree is used.
    """
    if state_dict is None:
        raise InvalidArgs("build_tree_from_state_dict requires a state dict")

    root = Membrane(root_name, 0, ctx, max_children=max_children, max_objects=max_objects)
    index: Dict[Tuple[str, ...], Membrane] = {(): root}

    for key, tensor in state_dict.items():
        prefix, leaf = _split_key(key)
        node = root
        for depth in range(1, len(prefix) + 1):
            path = prefix[:depth]
            child = index.get(path)
            if child is None:
                child = Membrane(
                    path[-1],
                    depth,
                    ctx,
                    max_children=max_children,
                    max_objects=max_objects,
                )
                node.add_child(child)
                index[path] = child
            node = child
        if not tensor.is_contiguous():
            raise InvalidArgs(f"Parameter '{key}' is not contiguous")
        node.add_object(TorchBuffer(tensor, name=key))

    return root


def load_safetensors_tree(
    path: Union[str, Path],
    root_name: Optional[str] = None,
    **kwargs,
) -> Tuple[Membrane, Dict[str, torch.Tensor]]:
    """
    Load a safetensors file into a tree.

    Returns the tree and the loaded state dict; the state dict owns the
    tensors the tree borrows.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Checkpoint not found: {path}")
    state_dict = load_file(str(path), device="cpu")
    root = build_tree_from_state_dict(state_dict, root_name or path.stem, **kwargs)
    return root, state_dict


def export_state_dict(root: Membrane) -> "OrderedDict[str, torch.Tensor]":
    """Collect every named torch buffer in preorder."""
    if root is None:
        raise InvalidArgs("export_state_dict requires a root membrane")
    exported: "OrderedDict[str, torch.Tensor]" = OrderedDict()
    for membrane in root.iter_preorder():
        for buffer in membrane.objects:
            if not isinstance(buffer, TorchBuffer):
                continue
            if not buffer.name:
                raise InvalidArgs(f"Unnamed buffer in membrane '{membrane.name}'")
            if buffer.name in exported:
                raise InvalidArgs(f"Duplicate buffer name '{buffer.name}'")
            exported[buffer.name] = buffer.tensor
    return exported


def save_safetensors_tree(
    root: Membrane,
    path: Union[str, Path],
    metadata: Optional[Mapping[str, str]] = None,
) -> str:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    save_file(dict(export_state_dict(root)), str(out_path), metadata=dict(metadata or {}))
    return str(out_path)
