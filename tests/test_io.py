# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Unit tests for building membrane trees from checkpoints."""

import tempfile
import unittest
from collections import OrderedDict
from pathlib import Path

import torch
from safetensors.torch import load_file, save_file

from membrane_qat.buffers import TorchBuffer
from membrane_qat.core import Membrane
from membrane_qat.errors import CapacityExceeded, InvalidArgs
from membrane_qat.io import (
    build_tree_from_state_dict,
    export_state_dict,
    load_safetensors_tree,
    save_safetensors_tree,
)
from membrane_qat.transforms import TransformConfig, apply_data_free_quant


def _state_dict():
    return OrderedDict(
        [
            ("embed.weight", torch.randn(8, 4)),
            ("encoder.layers.0.weight", torch.randn(4, 4)),
            ("encoder.layers.0.bias", torch.zeros(4)),
            ("encoder.layers.1.weight", torch.randn(4, 4)),
            ("head.weight", torch.randn(2, 4)),
            ("step", torch.tensor(3)),
        ]
    )


class TestStateDictTree(unittest.TestCase):
    def test_prefixes_become_membranes(self):
        root = build_tree_from_state_dict(_state_dict(), "model")

        names = [(m.name, m.level) for m in root.iter_preorder()]
        self.assertEqual(
            names,
            [
                ("model", 0),
                ("embed", 1),
                ("encoder", 1),
                ("layers", 2),
                ("0", 3),
                ("1", 3),
                ("head", 1),
            ],
        )
        self.assertEqual([b.name for b in root.objects], ["step"])
        layer0 = root.children[1].children[0].children[0]
        self.assertEqual([b.name for b in layer0.objects], ["encoder.layers.0.weight", "encoder.layers.0.bias"])

    def test_tree_borrows_tensors(self):
        state_dict = _state_dict()
        root = build_tree_from_state_dict(state_dict)
        apply_data_free_quant(root, TransformConfig.new("q8_0", 0.5))
        self.assertTrue(bool((state_dict["encoder.layers.0.bias"] != 0).any()))
        self.assertEqual(int(state_dict["step"]), 3)

    def test_capacity_limits_apply(self):
        state_dict = OrderedDict((f"block{i}.weight", torch.zeros(1)) for i in range(3))
        with self.assertRaises(CapacityExceeded):
            build_tree_from_state_dict(state_dict, max_children=2)

    def test_rejects_bad_keys_and_layouts(self):
        with self.assertRaises(InvalidArgs):
            build_tree_from_state_dict({"...": torch.zeros(1)})
        with self.assertRaises(InvalidArgs):
            build_tree_from_state_dict({"w": torch.zeros(3, 4).t()})
        with self.assertRaises(InvalidArgs):
            build_tree_from_state_dict(None)


class TestExport(unittest.TestCase):
    def test_export_preserves_names(self):
        state_dict = _state_dict()
        exported = export_state_dict(build_tree_from_state_dict(state_dict))
        self.assertEqual(set(exported), set(state_dict))
        self.assertIs(exported["head.weight"], state_dict["head.weight"])

    def test_duplicate_and_unnamed_buffers(self):
        root = Membrane("root", 0)
        root.add_object(TorchBuffer(torch.zeros(1), name="w"))
        root.add_object(TorchBuffer(torch.zeros(1), name="w"))
        with self.assertRaises(InvalidArgs):
            export_state_dict(root)

        unnamed = Membrane("root", 0)
        unnamed.add_object(TorchBuffer(torch.zeros(1)))
        with self.assertRaises(InvalidArgs):
            export_state_dict(unnamed)

    def test_safetensors_round_trip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            source = Path(tmpdir) / "model.safetensors"
            target = Path(tmpdir) / "out" / "quant.safetensors"
            save_file(dict(_state_dict()), str(source))

            root, state_dict = load_safetensors_tree(source)
            self.assertEqual(root.name, "model")
            apply_data_free_quant(root, TransformConfig.new("q8_0", 0.1))
            saved = save_safetensors_tree(root, target, metadata={"note": "unit"})

            reloaded = load_file(saved)
            self.assertEqual(set(reloaded), set(state_dict))
            self.assertTrue(torch.equal(reloaded["head.weight"], state_dict["head.weight"]))

    def test_missing_checkpoint(self):
        with self.assertRaises(FileNotFoundError):
            load_safetensors_tree("/nonexistent/model.safetensors")


if __name__ == "__main__":
    unittest.main()
