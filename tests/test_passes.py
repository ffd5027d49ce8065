# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Unit tests for the transformation passes and their shared traversal."""

import unittest

import numpy as np
import torch

from membrane_qat.buffers import NumpyBuffer, TorchBuffer
from membrane_qat.core import Membrane
from membrane_qat.errors import InvalidArgs
from membrane_qat.transforms import (
    DataFreeQuantPass,
    EvolvePass,
    FakeQuantTile,
    QualityThresholdSelector,
    QuantType,
    TileInspector,
    TransformConfig,
    TransformPass,
    TransformPipeline,
    apply_data_free_quant,
    clamp_rule,
    evolve,
    forward_tiled_quant,
    is_large_buffer,
    mixed_precision_quant,
    run_pass,
    scale_rule,
)
from membrane_qat.transforms.evolution import EvolutionRule
from membrane_qat.transforms.passes import perturb_within

TOL = 1e-6


def _generator(seed=0):
    generator = torch.Generator(device="cpu")
    generator.manual_seed(seed)
    return generator


def _scenario_tree():
    root = Membrane("root", 0)
    a = Membrane("A", 1)
    b = Membrane("B", 1)
    root.add_child(a)
    root.add_child(b)
    tensors = [torch.linspace(-1.0, 1.0, n) for n in (10, 20, 30)]
    for i, tensor in enumerate(tensors):
        a.add_object(TorchBuffer(tensor, name=f"A.w{i}"))
    return root, a, b, tensors


class _Recorder(TransformPass):
    name = "recorder"

    def __init__(self):
        self.events = []

    def begin(self, root, context):
        self.events.append("begin")

    def visit(self, membrane, context):
        self.events.append(membrane.name)

    def end(self, root, context):
        self.events.append("end")


class _FailOnSecond(TransformPass):
    name = "fail_on_second"

    def __init__(self):
        self.seen = []

    def visit(self, membrane, context):
        self.seen.append(membrane.name)
        if len(self.seen) == 2:
            raise RuntimeError(f"cannot transform {membrane.name}")
        membrane.transform_config = TransformConfig.new("q8_0", 0.0)
        for buffer in membrane.objects:
            buffer.as_mutable_float_slice().fill_(7.0)


class TestTraversal(unittest.TestCase):
    def test_preorder_visit_order(self):
        root = Membrane("root", 0)
        a = Membrane("a", 1)
        b = Membrane("b", 1)
        root.add_child(a)
        root.add_child(b)
        a.add_child(Membrane("a0", 2))
        recorder = _Recorder()

        context = run_pass(root, recorder)

        self.assertEqual(recorder.events, ["begin", "root", "a", "a0", "b", "end"])
        self.assertEqual(context.visited, ["root", "a", "a0", "b"])
        self.assertEqual(context.nodes_visited, 4)

    def test_failure_keeps_earlier_changes(self):
        root, a, b, tensors = _scenario_tree()
        root.add_object(TorchBuffer(torch.zeros(4), name="root.w"))
        failing = _FailOnSecond()

        with self.assertRaises(RuntimeError):
            run_pass(root, failing)

        self.assertEqual(failing.seen, ["root", "A"])
        self.assertIsNotNone(root.transform_config)
        self.assertTrue(torch.equal(root.objects[0].tensor, torch.full((4,), 7.0)))
        self.assertIsNone(a.transform_config)
        self.assertIsNone(b.transform_config)
        self.assertTrue(torch.equal(tensors[0], torch.linspace(-1.0, 1.0, 10)))

    def test_run_pass_requires_root(self):
        with self.assertRaises(InvalidArgs):
            run_pass(None, _Recorder())

    def test_pipeline_runs_in_order(self):
        root, _, _, _ = _scenario_tree()
        config = TransformConfig.new("q8_0", 0.0)
        pipeline = TransformPipeline([DataFreeQuantPass(config), EvolvePass()])
        report = pipeline.run(root)
        self.assertEqual(report.stage_order, ["data_free_quant", "evolve"])
        self.assertEqual(set(report.stage_timings), {"data_free_quant", "evolve"})
        self.assertEqual(report.to_dict()["stage_order"], ["data_free_quant", "evolve"])


class TestDataFreeQuant(unittest.TestCase):
    def test_zero_noise_scenario(self):
        root, a, b, tensors = _scenario_tree()
        originals = [t.clone() for t in tensors]
        config = TransformConfig.new("q4_k", 0.0)

        context = apply_data_free_quant(root, config)

        for tensor, original in zip(tensors, originals):
            self.assertTrue(torch.equal(tensor, original))
        for membrane in (root, a, b):
            self.assertEqual(membrane.transform_config, config)
        self.assertEqual(context.diagnostics["configs_stored"], 3)
        self.assertEqual(context.diagnostics["elements_perturbed"], 60)

    def test_first_config_wins(self):
        root, a, _, _ = _scenario_tree()
        apply_data_free_quant(root, TransformConfig.new("q4_k", 0.01), _generator())
        apply_data_free_quant(root, TransformConfig.new("q8_0", 0.5), _generator())
        self.assertAlmostEqual(root.transform_config.noise_scale, 0.01)
        self.assertIs(a.transform_config.target_type, QuantType.Q4_K)

    def test_stored_config_is_a_copy(self):
        root = Membrane("root", 0)
        config = TransformConfig.new("q4_k", 0.02)
        apply_data_free_quant(root, config)
        self.assertEqual(root.transform_config, config)
        self.assertIsNot(root.transform_config, config)

    def test_noise_bound(self):
        scale = 0.05
        tensor = torch.full((1000,), 0.25)
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(tensor))

        apply_data_free_quant(root, TransformConfig.new("q4_k", scale), _generator(7))

        delta = (tensor.double() - 0.25).abs()
        self.assertLessEqual(float(delta.max()), scale)
        self.assertGreater(float(delta.max()), 0.0)

    def test_seeded_generator_is_reproducible(self):
        first = torch.zeros(64)
        second = torch.zeros(64)
        for tensor in (first, second):
            root = Membrane("root", 0)
            root.add_object(TorchBuffer(tensor))
            apply_data_free_quant(root, TransformConfig.new("q8_0", 0.1), _generator(3))
        self.assertTrue(torch.equal(first, second))

    def test_half_precision_buffers_are_perturbed(self):
        tensor = torch.ones(20000, dtype=torch.float16)
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(tensor))
        apply_data_free_quant(root, TransformConfig.new("f16", 0.1), _generator(0))
        delta = (tensor.double() - 1.0).abs()
        self.assertTrue(bool((delta > 0).any()))
        self.assertLessEqual(float(delta.max()), 0.1)

    def test_perturb_within_keeps_out_of_bound_elements(self):
        values = torch.ones(3, dtype=torch.float16)
        noise = torch.tensor([0.05, 0.1, -0.1])
        perturb_within(values, noise, 0.1)
        delta = (values.double() - 1.0).abs()
        self.assertGreater(float(delta[0]), 0.0)
        self.assertTrue(bool((delta <= 0.1).all()))

    def test_non_float_buffers_are_untouched(self):
        ints = torch.arange(10, dtype=torch.int32)
        quantized = torch.quantize_per_tensor(torch.linspace(-1, 1, 8), 0.1, 0, torch.qint8)
        packed = np.arange(16, dtype=np.int8)
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(ints))
        root.add_object(TorchBuffer(quantized))
        root.add_object(NumpyBuffer(packed, quantized_kind="q8_0"))
        before_ints = ints.clone()
        before_q = quantized.int_repr().clone()
        before_packed = packed.copy()

        context = apply_data_free_quant(root, TransformConfig.new("q4_k", 0.5), _generator())

        self.assertTrue(torch.equal(ints, before_ints))
        self.assertTrue(torch.equal(quantized.int_repr(), before_q))
        np.testing.assert_array_equal(packed, before_packed)
        self.assertEqual(context.diagnostics["buffers_skipped"], 3)
        self.assertNotIn("buffers_perturbed", context.diagnostics)

    def test_numpy_float_buffer_is_updated_in_place(self):
        array = np.zeros(16, dtype=np.float32)
        root = Membrane("root", 0)
        root.add_object(NumpyBuffer(array))
        apply_data_free_quant(root, TransformConfig.new("q8_0", 0.2), _generator())
        self.assertTrue(np.any(array != 0))
        self.assertLessEqual(float(np.abs(array).max()), 0.2 + TOL)

    def test_requires_arguments(self):
        with self.assertRaises(InvalidArgs):
            apply_data_free_quant(None, TransformConfig.new("q8_0", 0.1))
        with self.assertRaises(InvalidArgs):
            apply_data_free_quant(Membrane("root", 0), None)


class _TileLog:
    def __init__(self):
        self.calls = []

    def __call__(self, tile, reference):
        self.calls.append((tile.numel(), None if reference is None else reference.numel()))


class TestTiledQuant(unittest.TestCase):
    def _root(self, n=10):
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(torch.linspace(-1.0, 1.0, n)))
        return root

    def test_tiles_cover_buffer(self):
        log = _TileLog()
        config = TransformConfig.new("q8_0", 0.0)
        context = forward_tiled_quant(self._root(10), config, tile_fn=log)
        self.assertEqual([size for size, _ in log.calls], [3, 3, 3, 1])
        self.assertEqual(context.diagnostics["tiles"], 4)
        self.assertEqual(context.diagnostics["buffers_tiled"], 1)

    def test_reference_slices(self):
        log = _TileLog()
        reference = TorchBuffer(torch.ones(5))
        forward_tiled_quant(self._root(10), TransformConfig.new("q8_0", 0.0), reference, log)
        self.assertEqual([ref for _, ref in log.calls], [3, 2, None, None])

    def test_reference_ignored_when_disabled(self):
        log = _TileLog()
        config = TransformConfig.new("q8_0", 0.0).replace(use_reference=False)
        context = forward_tiled_quant(self._root(10), config, TorchBuffer(torch.ones(10)), log)
        self.assertTrue(all(ref is None for _, ref in log.calls))
        self.assertFalse(context.diagnostics["use_reference"])

    def test_custom_tile_size(self):
        log = _TileLog()
        config = TransformConfig.new("q8_0", 0.0).replace(tile_size=4)
        forward_tiled_quant(self._root(10), config, tile_fn=log)
        self.assertEqual([size for size, _ in log.calls], [4, 4, 2])

    def test_default_hook_leaves_values_unchanged(self):
        tensor = torch.linspace(-1.0, 1.0, 10)
        original = tensor.clone()
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(tensor))

        context = forward_tiled_quant(root, TransformConfig.new("q4_k", 0.0))

        self.assertTrue(torch.equal(tensor, original))
        summary = context.diagnostics["tile_transform"]
        self.assertEqual(summary["transform"], "inspect")
        self.assertEqual(summary["tiles"], 4)
        self.assertEqual(summary["elements"], 10)

    def test_inspector_reports_reference_delta(self):
        tensor = torch.linspace(-1.0, 1.0, 10)
        original = tensor.clone()
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(tensor))
        inspector = TileInspector()

        forward_tiled_quant(root, TransformConfig.new("q8_0", 0.0), TorchBuffer(torch.ones(4)), inspector)

        self.assertTrue(torch.equal(tensor, original))
        self.assertEqual(inspector.referenced_tiles, 2)
        self.assertAlmostEqual(inspector.max_reference_delta, 2.0, places=5)

    def test_fake_quant_tile_quantizes(self):
        tensor = torch.linspace(-1.0, 1.0, 9)
        original = tensor.clone()
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(tensor))

        context = forward_tiled_quant(root, TransformConfig.new("q4_0", 0.0), tile_fn=FakeQuantTile(QuantType.Q4_0))

        summary = context.diagnostics["tile_transform"]
        self.assertEqual(summary["tiles"], 3)
        self.assertEqual(summary["transform"], "fake_quant")
        self.assertEqual(summary["target_type"], "q4_0")
        # Each tile's max magnitude survives the symmetric grid exactly.
        self.assertAlmostEqual(float(tensor[0]), float(original[0]), places=5)
        self.assertLessEqual(float((tensor - original).abs().max()), 1.0 / 7 + TOL)

    def test_f32_target_leaves_values(self):
        tensor = torch.linspace(-1.0, 1.0, 7)
        original = tensor.clone()
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(tensor))
        forward_tiled_quant(root, TransformConfig.new("f32", 0.0), tile_fn=FakeQuantTile(QuantType.F32))
        self.assertTrue(torch.equal(tensor, original))

    def test_fake_quant_tile_uses_reference_scale(self):
        tile_fn = FakeQuantTile(QuantType.Q8_0)
        tile = torch.tensor([0.5, -0.25, 0.1])
        tile_fn(tile, torch.tensor([2.0, 2.0, 2.0]))
        self.assertEqual(tile_fn.referenced_tiles, 1)
        self.assertLessEqual(tile_fn.max_abs_error, (2.0 / 127) / 2 + TOL)

    def test_non_float_buffers_skipped(self):
        log = _TileLog()
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(torch.arange(10)))
        context = forward_tiled_quant(root, TransformConfig.new("q8_0", 0.0), tile_fn=log)
        self.assertEqual(log.calls, [])
        self.assertEqual(context.diagnostics["buffers_skipped"], 1)


class TestMixedPrecision(unittest.TestCase):
    def test_large_buffer_boundary(self):
        self.assertFalse(is_large_buffer(TorchBuffer(torch.empty(1_000_000))))
        self.assertTrue(is_large_buffer(TorchBuffer(torch.empty(1_000_001))))

    def test_routes_large_and_small_buffers(self):
        values = torch.randn(200, generator=_generator())
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(values.clone(), name="large"))
        root.add_object(TorchBuffer(values[:50].clone(), name="small"))
        selector = QualityThresholdSelector(large_threshold=100)

        context = mixed_precision_quant(root, 0.0, selector)

        decisions = {d["buffer"]: d for d in context.diagnostics["decisions"]}
        self.assertTrue(decisions["large"]["is_large"])
        self.assertEqual(decisions["large"]["selected_type"], "q4_k")
        self.assertFalse(decisions["small"]["is_large"])
        self.assertEqual(decisions["small"]["selected_type"], "q8_0")
        self.assertEqual(context.diagnostics["large_buffers"], 1)
        self.assertEqual(context.diagnostics["small_buffers"], 1)

    def test_higher_threshold_never_lowers_precision(self):
        values = torch.randn(500, generator=_generator(1))
        selector = QualityThresholdSelector(large_threshold=100)
        buffer = TorchBuffer(values)
        ladder = list(selector.large_candidates)

        previous = -1
        for threshold in (0.0, 0.5, 0.9, 0.95, 0.99, 0.999, 1.0):
            decision = selector.select("root", 0, buffer, threshold)
            rank = ladder.index(decision.selected_type)
            self.assertGreaterEqual(rank, previous)
            previous = rank
        self.assertEqual(ladder[previous], QuantType.Q8_0)

    def test_unreachable_threshold_falls_back_to_highest(self):
        buffer = TorchBuffer(torch.randn(64, generator=_generator(2)))
        decision = QualityThresholdSelector().select("root", 0, buffer, 1.0)
        self.assertIs(decision.selected_type, QuantType.F16)
        self.assertEqual([r["type"] for r in decision.rejected], ["q8_0"])

    def test_does_not_modify_buffers(self):
        tensor = torch.randn(64, generator=_generator())
        original = tensor.clone()
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(tensor))
        mixed_precision_quant(root, 0.95)
        self.assertTrue(torch.equal(tensor, original))

    def test_non_float_buffer_skipped(self):
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(torch.arange(8)))
        context = mixed_precision_quant(root, 0.9)
        decision = context.diagnostics["decisions"][0]
        self.assertIsNone(decision["selected_type"])
        self.assertTrue(decision["skipped_reason"].startswith("non_float"))
        self.assertEqual(context.diagnostics["buffers_skipped"], 1)

    def test_read_only_float_buffer_skipped(self):
        array = np.linspace(-1.0, 1.0, 16, dtype=np.float32)
        array.setflags(write=False)
        root = Membrane("root", 0)
        root.add_object(NumpyBuffer(array))
        context = mixed_precision_quant(root, 0.9)
        decision = context.diagnostics["decisions"][0]
        self.assertIsNone(decision["selected_type"])
        self.assertEqual(decision["skipped_reason"], "read_only")

    def test_threshold_range(self):
        with self.assertRaises(InvalidArgs):
            mixed_precision_quant(Membrane("root", 0), 1.5)
        with self.assertRaises(InvalidArgs):
            mixed_precision_quant(None, 0.5)


class TestEvolve(unittest.TestCase):
    def test_without_rules_is_noop(self):
        root, _, _, tensors = _scenario_tree()
        originals = [t.clone() for t in tensors]
        context = evolve(root)
        self.assertEqual(context.nodes_visited, 3)
        self.assertEqual(context.diagnostics.get("firings", 0), 0)
        for tensor, original in zip(tensors, originals):
            self.assertTrue(torch.equal(tensor, original))

    def test_rules_run_by_priority(self):
        tensor = torch.tensor([0.8, -0.9])
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(tensor))
        root.add_rule(scale_rule("double", 2.0))
        root.add_rule(clamp_rule("clip", 1.0, priority=5))

        context = evolve(root)

        self.assertTrue(torch.allclose(tensor, torch.tensor([1.6, -1.8])))
        self.assertEqual(context.diagnostics["rule_firings"], {"clip": 1, "double": 1})

    def test_multiple_steps(self):
        tensor = torch.tensor([0.8, -0.9])
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(tensor))
        root.add_rule(scale_rule("double", 2.0))
        root.add_rule(clamp_rule("clip", 1.0, priority=5))

        context = evolve(root, steps=2)

        self.assertTrue(torch.allclose(tensor, torch.tensor([2.0, -2.0])))
        self.assertEqual(context.diagnostics["steps"], 2)

    def test_rules_only_touch_own_objects(self):
        parent_tensor = torch.ones(3)
        child_tensor = torch.ones(3)
        root = Membrane("root", 0)
        child = Membrane("child", 1)
        root.add_child(child)
        root.add_object(TorchBuffer(parent_tensor))
        child.add_object(TorchBuffer(child_tensor))
        root.add_rule(scale_rule("double", 2.0))

        evolve(root)

        self.assertTrue(torch.equal(parent_tensor, torch.full((3,), 2.0)))
        self.assertTrue(torch.equal(child_tensor, torch.ones(3)))

    def test_custom_pattern(self):
        root = Membrane("root", 0)
        kept = torch.ones(2)
        scaled = torch.ones(2)
        root.add_object(TorchBuffer(kept, name="bias"))
        root.add_object(TorchBuffer(scaled, name="weight"))
        hits = []
        root.add_rule(
            EvolutionRule(
                name="weights",
                pattern=lambda membrane, buffer: buffer.name == "weight",
                action=lambda membrane, buffer: hits.append(buffer.name),
            )
        )
        evolve(root)
        self.assertEqual(hits, ["weight"])

    def test_invalid_rule(self):
        with self.assertRaises(InvalidArgs):
            EvolutionRule(name="", pattern=len, action=len)
        with self.assertRaises(InvalidArgs):
            EvolutionRule(name="broken", pattern=None, action=len)
        with self.assertRaises(InvalidArgs):
            evolve(Membrane("root", 0), steps=0)


if __name__ == "__main__":
    unittest.main()
