# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Shared type aliases for whitened-lsq.

Key
    Name of a nonlinear variable (e.g. ``"x1"`` or an int id). Any hashable.
Index
    Position of a variable in a linear system, assigned by an Ordering.
"""

from __future__ import annotations

from typing import Any, Dict, Hashable, Mapping, NewType

Key = Hashable
Index = NewType("Index", int)

# Per-index update vectors of a linear system.
VectorValues = Dict[Index, Any]
IndexedVectors = Mapping[Index, Any]
