# Copyright (c) 2026 Thorir Mar Ingolfsson, ETH Zurich
# SPDX-License-Identifier: Apache-2.0

"""Membrane tree and namespace."""

from .membrane import (
    DEFAULT_MAX_CHILDREN,
    DEFAULT_MAX_OBJECTS,
    DEFAULT_MAX_RULES,
    NAME_MAX,
    Membrane,
    TeardownReport,
)
from .namespace import Namespace, propagate_namespace

__all__ = [
    "DEFAULT_MAX_CHILDREN",
    "DEFAULT_MAX_OBJECTS",
    "DEFAULT_MAX_RULES",
    "NAME_MAX",
    "Membrane",
    "Namespace",
    "TeardownReport",
    "propagate_namespace",
]
