# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Command-line driver: run the pass pipeline on a demo model or a checkpoint."""

from __future__ import annotations

import argparse
import json
import logging
from logging import Logger
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import torch
import torch.nn as nn
from omegaconf import DictConfig, OmegaConf

from .backends import ComputeGraph
from .buffers.allocation import AllocationContext, generate_synthetic_data
from .buffers.torch_buffer import TorchBuffer
from .config import build_backend, build_namespace, build_pipeline, load_run_config
from .core.membrane import Membrane
from .core.namespace import Namespace
from .errors import MembraneError
from .io import load_safetensors_tree, save_safetensors_tree
from .reporting import count_parameters, format_namespace_stats, format_tree, namespace_report
from .transforms.config import QuantType
from .transforms.evolution import clamp_rule
from .transforms.traversal import PipelineReport

logger: Logger = logging.getLogger(__name__)

DEMO_MEM_SIZE = 512 * 1024 * 1024
DEMO_INIT_SCALE = 0.05


class _AttentionBlock(nn.Module):
    """Single-head attention over the demo q/k/v weights."""

    def __init__(self, query: torch.Tensor, key: torch.Tensor, value: torch.Tensor) -> None:
        super().__init__()
        self.register_buffer("query", query)
        self.register_buffer("key", key)
        self.register_buffer("value", value)
        self.scale = float(query.shape[-1]) ** -0.5

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        q = x @ self.query
        k = x @ self.key
        v = x @ self.value
        scores = torch.softmax(q @ k.transpose(-2, -1) * self.scale, dim=-1)
        return scores @ v


def build_demo_tree(
    ctx: AllocationContext,
    generator: Optional[torch.Generator] = None,
    hidden: int = 512,
) -> Membrane:
    """Transformer-shaped hierarchy: embedding, attention and ffn under one root."""
    root = Membrane("transformer_model", 0, ctx)
    layers = {
        "embedding": [("word_embeddings", (1000, hidden)), ("pos_embeddings", (hidden, hidden))],
        "attention": [
            ("query_weights", (hidden, hidden)),
            ("key_weights", (hidden, hidden)),
            ("value_weights", (hidden, hidden)),
        ],
        "ffn": [("ffn_up", (hidden, 4 * hidden)), ("ffn_down", (4 * hidden, hidden))],
    }
    for layer_name, params in layers.items():
        layer = Membrane(layer_name, 1, ctx)
        root.add_child(layer)
        for param_name, shape in params:
            buffer = generate_synthetic_data(
                ctx, shape, DEMO_INIT_SCALE, generator, name=f"{layer_name}.{param_name}"
            )
            layer.add_object(buffer)
    return root


def _attention_graph(root: Membrane) -> Optional[ComputeGraph]:
    attention = next((m for m in root.iter_preorder() if m.name == "attention"), None)
    if attention is None or len(attention.objects) < 3:
        return None
    tensors = [b.tensor for b in attention.objects[:3] if isinstance(b, TorchBuffer)]
    if len(tensors) < 3:
        return None
    hidden = tensors[0].shape[0]
    block = _AttentionBlock(*tensors)
    return ComputeGraph.trace(block, torch.zeros(1, 4, hidden), name="attention_block")


def _update_statistics(namespace: Namespace, root: Membrane, target: QuantType) -> None:
    total, floating = count_parameters(root)
    ratio = 32.0 / target.bits if floating else 1.0
    namespace.update_statistics(total, floating, ratio)


def _write_report(path: str, namespace: Namespace, pipeline_report: PipelineReport) -> None:
    payload: Dict[str, Any] = namespace_report(namespace)
    payload["pipeline"] = pipeline_report.to_dict()
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")


def _run_pipeline(cfg: DictConfig, namespace: Namespace, root: Membrane, report_path: Optional[str]) -> PipelineReport:
    generator = torch.Generator(device="cpu")
    generator.manual_seed(int(cfg.seed))
    pipeline = build_pipeline(cfg, generator=generator)
    pipeline_report = pipeline.run(root)
    _update_statistics(namespace, root, QuantType.parse(cfg.transform.target_type))
    if report_path:
        _write_report(report_path, namespace, pipeline_report)
    return pipeline_report


def _print_pipeline(pipeline_report: PipelineReport) -> None:
    for context in pipeline_report.contexts:
        counters = {k: v for k, v in context.diagnostics.items() if isinstance(v, (int, float, bool))}
        print(f"[OK] {context.pass_name}: {context.nodes_visited} membranes, {counters}")


def cmd_demo(args: argparse.Namespace, cfg: DictConfig) -> int:
    ctx = AllocationContext(DEMO_MEM_SIZE, name="demo")
    generator = torch.Generator(device="cpu")
    generator.manual_seed(int(cfg.seed))
    namespace: Optional[Namespace] = None
    root: Optional[Membrane] = None
    try:
        namespace = build_namespace(cfg, build_backend(cfg))
        root = build_demo_tree(ctx, generator, hidden=args.hidden)
        # Keeps the feed-forward weights bounded across evolution steps.
        root.children[-1].add_rule(clamp_rule("ffn_clamp", 1.0))
        namespace.set_root(root)
        print("===> Membrane hierarchy")
        print(format_tree(root))

        print("===> Running passes")
        pipeline_report = _run_pipeline(cfg, namespace, root, args.report)
        _print_pipeline(pipeline_report)

        graph = _attention_graph(root)
        if graph is not None:
            namespace.compute(graph)
            if graph.outputs is not None:
                print(f"[OK] {graph.name}: output shape {tuple(graph.outputs.shape)}")

        print("===> Final statistics")
        print(format_tree(root))
        print(format_namespace_stats(namespace.stats()))
    finally:
        if root is not None:
            root.free()
        if namespace is not None:
            namespace.free()
        ctx.free()
    return 0


def cmd_run(args: argparse.Namespace, cfg: DictConfig) -> int:
    root, state_dict = load_safetensors_tree(
        args.checkpoint,
        max_children=int(cfg.tree.max_children),
        max_objects=int(cfg.tree.max_objects),
    )
    logger.info("Loaded %d tensors from %s", len(state_dict), args.checkpoint)
    namespace: Optional[Namespace] = None
    try:
        namespace = build_namespace(cfg, build_backend(cfg))
        namespace.set_root(root)
        pipeline_report = _run_pipeline(cfg, namespace, root, args.report)
        _print_pipeline(pipeline_report)
        if args.output:
            saved = save_safetensors_tree(
                root,
                args.output,
                metadata={"membrane_qat.target_type": str(cfg.transform.target_type)},
            )
            print(f"Safetensors file saved to {saved}")
        print(format_namespace_stats(namespace.stats()))
    finally:
        root.free()
        if namespace is not None:
            namespace.free()
        del state_dict
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="membrane-qat",
        description="Apply data-free quantization passes across a membrane tree.",
    )
    parser.add_argument("--config", type=str, default=None, help="YAML run configuration.")
    parser.add_argument("--report", type=str, default=None, help="Write a JSON report to this path.")
    parser.add_argument("--verbose", action="store_true", help="Enable INFO logging.")
    parser.add_argument("--print-config", action="store_true", help="Print the merged configuration.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    demo = subparsers.add_parser("demo", help="Run the passes on a synthetic transformer hierarchy.")
    demo.add_argument("--hidden", type=int, default=512, help="Hidden size of the demo model.")
    demo.add_argument("overrides", nargs="*", help="Config overrides such as transform.noise_scale=0.02")

    run = subparsers.add_parser("run", help="Run the passes on a safetensors checkpoint.")
    run.add_argument("--checkpoint", type=str, required=True, help="Input safetensors file.")
    run.add_argument("--output", type=str, default=None, help="Output safetensors file.")
    run.add_argument("overrides", nargs="*", help="Config overrides such as passes=[data_free_quant]")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose and not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO)

    try:
        cfg = load_run_config(args.config, args.overrides)
        if args.print_config:
            print(OmegaConf.to_yaml(cfg, resolve=True))
        if args.command == "demo":
            if args.hidden <= 0:
                parser.error("--hidden must be positive")
            return cmd_demo(args, cfg)
        return cmd_run(args, cfg)
    except (MembraneError, FileNotFoundError) as exc:
        print(f"[FAIL] {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
