# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Nonlinear factor graph.

The graph is a plain ordered container of `NonlinearFactor` objects. It
does not own variables: values live in a separate `Values` estimate, and the
variable set of the graph is simply the union of its factors' keys.

Primary Methods
---------------
error(values)
    Total cost Σ factor.error(values).

ordering_for(values)
    An `Ordering` over the graph's keys, following the insertion order of
    ``values`` (keys missing from ``values`` go last, in factor order).

linearize(values, ordering)
    One index-space `GaussianFactor` per nonlinear factor, ready for
    `optimization.solvers.assemble_dense_system`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from whitened_lsq.core.jax_init import jnp
from whitened_lsq.core.types import Key
from whitened_lsq.linear.gaussian_factor import GaussianFactor
from whitened_lsq.linear.ordering import Ordering
from whitened_lsq.nonlinear.factor import NonlinearFactor
from whitened_lsq.nonlinear.values import Values


@dataclass
class NonlinearFactorGraph:
    factors: List[NonlinearFactor] = field(default_factory=list)

    def add(self, factor: NonlinearFactor) -> None:
        if not isinstance(factor, NonlinearFactor):
            raise TypeError(f"expected a NonlinearFactor, got {type(factor).__name__}")
        self.factors.append(factor)

    def __len__(self) -> int:
        return len(self.factors)

    def __iter__(self) -> Iterator[NonlinearFactor]:
        return iter(self.factors)

    def __getitem__(self, i: int) -> NonlinearFactor:
        return self.factors[i]

    def keys(self) -> List[Key]:
        """Keys touched by any factor, in order of first appearance."""
        seen = {}
        for factor in self.factors:
            for key in factor.keys:
                seen.setdefault(key, None)
        return list(seen)

    def error(self, values: Values) -> jnp.ndarray:
        total = jnp.asarray(0.0)
        for factor in self.factors:
            total = total + factor.error(values)
        return total

    def ordering_for(self, values: Optional[Values] = None) -> Ordering:
        graph_keys = self.keys()
        if values is None:
            return Ordering.from_keys(graph_keys)
        in_graph = set(graph_keys)
        ordered = [k for k in values.keys() if k in in_graph]
        ordered += [k for k in graph_keys if k not in values]
        return Ordering.from_keys(ordered)

    def linearize(self, values: Values, ordering: Optional[Ordering] = None) -> List[GaussianFactor]:
        if ordering is None:
            ordering = self.ordering_for(values)
        return [factor.linearize(values, ordering) for factor in self.factors]

    def equals(self, other: "NonlinearFactorGraph", tol: Optional[float] = None) -> bool:
        if len(other) != len(self):
            return False
        return all(a.equals(b, tol) for a, b in zip(self.factors, other.factors))
