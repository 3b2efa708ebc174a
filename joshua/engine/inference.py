"""
Exact inference for the dependency network.

Implements:
- Discrete factor algebra (product, marginalization) over numpy arrays
- Junction tree construction: moralization, greedy minimum fill-in
  triangulation, maximal cliques, maximum-weight spanning forest over
  separator sizes
- Belief propagation by synchronous Shafer-Shenoy message passing,
  bounded by a convergence tolerance and an iteration cap

Hitting the iteration cap is reported (converged=False) with the best
marginals available, never raised.
"""

import string
from dataclasses import dataclass
from itertools import combinations
from typing import Mapping, Optional, Sequence

import numpy as np
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TOLERANCE: float = 1e-6
DEFAULT_MAX_ITERATIONS: int = 100

_AXIS_LABELS = string.ascii_letters


class Factor:
    """A non-negative table over a tuple of discrete variables."""

    __slots__ = ("variables", "values")

    def __init__(self, variables: Sequence[str], values):
        self.variables = tuple(variables)
        self.values = np.asarray(values, dtype=float)
        if self.values.ndim != len(self.variables):
            raise ValueError(
                f"factor over {self.variables} needs {len(self.variables)} axes, "
                f"got {self.values.ndim}"
            )

    @classmethod
    def uniform(cls, variables: Sequence[str], cardinality: Mapping[str, int]) -> "Factor":
        shape = tuple(cardinality[v] for v in variables)
        return cls(variables, np.ones(shape))

    def product(self, other: "Factor") -> "Factor":
        union = self.variables + tuple(v for v in other.variables if v not in self.variables)
        if len(union) > len(_AXIS_LABELS):
            raise ValueError(f"factor product over {len(union)} variables is too wide")
        label = {v: _AXIS_LABELS[i] for i, v in enumerate(union)}
        spec = "{},{}->{}".format(
            "".join(label[v] for v in self.variables),
            "".join(label[v] for v in other.variables),
            "".join(label[v] for v in union),
        )
        return Factor(union, np.einsum(spec, self.values, other.values))

    def marginalize_to(self, keep: Sequence[str]) -> "Factor":
        """Sum out every variable not in keep; result axes follow keep's order."""
        keep = tuple(keep)
        missing = [v for v in keep if v not in self.variables]
        if missing:
            raise ValueError(f"cannot keep {missing}: not in factor {self.variables}")
        axes = tuple(i for i, v in enumerate(self.variables) if v not in keep)
        summed = self.values.sum(axis=axes) if axes else self.values
        remaining = tuple(v for v in self.variables if v in keep)
        if remaining != keep:
            summed = np.transpose(summed, [remaining.index(v) for v in keep])
        return Factor(keep, summed)

    def normalized(self) -> "Factor":
        total = self.values.sum()
        if total <= 0 or not np.isfinite(total):
            logger.warning("factor_degenerate_normalization", variables=self.variables)
            return Factor(self.variables, np.full(self.values.shape, 1.0 / self.values.size))
        return Factor(self.variables, self.values / total)

    def __repr__(self) -> str:
        return f"Factor({self.variables}, shape={self.values.shape})"


@dataclass(frozen=True)
class PropagationResult:
    """Marginals from one belief propagation run."""
    marginals: dict[str, tuple[float, ...]]
    iterations: int
    converged: bool
    max_delta: float

    def probability(self, node: str, state: int = 1) -> float:
        return self.marginals[node][state]


class JunctionTree:
    """
    Clique tree for a directed acyclic model.

    Built once per network snapshot; propagate() can then be called any
    number of times with different evidence. The structure is never
    modified after construction.
    """

    def __init__(
        self,
        nodes: Sequence[str],
        parents: Mapping[str, Sequence[str]],
        cpts: Mapping[str, Factor],
        cardinality: Mapping[str, int],
    ):
        self.nodes = tuple(nodes)
        self.cardinality = dict(cardinality)
        self.cliques: list[frozenset[str]] = _triangulate(self.nodes, _moralize(self.nodes, parents))
        self.edges: list[tuple[int, int]] = _spanning_forest(self.cliques)

        self.neighbors: dict[int, list[int]] = {i: [] for i in range(len(self.cliques))}
        for i, j in self.edges:
            self.neighbors[i].append(j)
            self.neighbors[j].append(i)
        self.separators: dict[tuple[int, int], tuple[str, ...]] = {}
        for i, j in self.edges:
            sep = tuple(sorted(self.cliques[i] & self.cliques[j]))
            self.separators[(i, j)] = sep
            self.separators[(j, i)] = sep

        # Each CPT goes to the first clique holding its whole family
        self._base_potentials = [
            Factor.uniform(sorted(c), self.cardinality) for c in self.cliques
        ]
        for node in self.nodes:
            cpt = cpts[node]
            family = set(cpt.variables)
            home = next(i for i, c in enumerate(self.cliques) if family <= c)
            self._base_potentials[home] = self._base_potentials[home].product(cpt)

        # Smallest clique containing each variable, for reading marginals
        self._home: dict[str, int] = {}
        for node in self.nodes:
            candidates = [i for i, c in enumerate(self.cliques) if node in c]
            self._home[node] = min(candidates, key=lambda i: (len(self.cliques[i]), i))

        logger.debug(
            "junction_tree_built",
            n_nodes=len(self.nodes),
            n_cliques=len(self.cliques),
            max_clique=max((len(c) for c in self.cliques), default=0),
        )

    @property
    def treewidth(self) -> int:
        return max((len(c) for c in self.cliques), default=1) - 1

    def propagate(
        self,
        evidence: Optional[Mapping[str, Sequence[float]]] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        tolerance: float = DEFAULT_TOLERANCE,
    ) -> PropagationResult:
        """
        Run message passing with soft evidence.

        Args:
            evidence: node -> likelihood vector over its states
            max_iterations: hard cap on synchronous sweeps
            tolerance: stop once no message changes by more than this
        """
        potentials = list(self._base_potentials)
        for node, likelihood in (evidence or {}).items():
            if node not in self._home:
                raise KeyError(f"evidence for unknown node {node!r}")
            lik = Factor((node,), np.asarray(likelihood, dtype=float))
            home = self._home[node]
            potentials[home] = potentials[home].product(lik)

        messages: dict[tuple[int, int], Factor] = {
            key: Factor.uniform(sep, self.cardinality).normalized()
            for key, sep in self.separators.items()
        }

        converged = not messages
        iterations = 0
        max_delta = 0.0
        while not converged and iterations < max_iterations:
            iterations += 1
            updated: dict[tuple[int, int], Factor] = {}
            for (i, j), sep in self.separators.items():
                f = potentials[i]
                for k in self.neighbors[i]:
                    if k != j:
                        f = f.product(messages[(k, i)])
                updated[(i, j)] = f.marginalize_to(sep).normalized()

            max_delta = max(
                float(np.max(np.abs(updated[key].values - messages[key].values)))
                for key in updated
            )
            messages = updated
            converged = max_delta < tolerance

        if not converged:
            logger.warning(
                "belief_propagation_not_converged",
                iterations=iterations,
                max_delta=max_delta,
                tolerance=tolerance,
            )

        marginals: dict[str, tuple[float, ...]] = {}
        beliefs: dict[int, Factor] = {}
        for node in self.nodes:
            home = self._home[node]
            if home not in beliefs:
                belief = potentials[home]
                for k in self.neighbors[home]:
                    belief = belief.product(messages[(k, home)])
                beliefs[home] = belief
            marg = beliefs[home].marginalize_to((node,)).normalized()
            marginals[node] = tuple(float(p) for p in marg.values)

        return PropagationResult(
            marginals=marginals,
            iterations=iterations,
            converged=converged,
            max_delta=max_delta,
        )


def _moralize(nodes: Sequence[str], parents: Mapping[str, Sequence[str]]) -> dict[str, set[str]]:
    """Undirected moral graph: drop directions, marry co-parents."""
    adj: dict[str, set[str]] = {n: set() for n in nodes}
    for child in nodes:
        pa = list(parents.get(child, ()))
        for p in pa:
            adj[p].add(child)
            adj[child].add(p)
        for a, b in combinations(pa, 2):
            adj[a].add(b)
            adj[b].add(a)
    return adj


def _triangulate(nodes: Sequence[str], adj: Mapping[str, set[str]]) -> list[frozenset[str]]:
    """
    Greedy minimum fill-in elimination.

    Ties break on fewest neighbours, then node name, so the clique set is
    deterministic. Returns the maximal elimination cliques.
    """
    graph = {n: set(neigh) for n, neigh in adj.items()}
    remaining = set(nodes)
    cliques: list[frozenset[str]] = []

    def fill_in(n: str) -> int:
        neigh = graph[n] & remaining
        return sum(1 for a, b in combinations(sorted(neigh), 2) if b not in graph[a])

    while remaining:
        node = min(remaining, key=lambda n: (fill_in(n), len(graph[n] & remaining), n))
        neigh = graph[node] & remaining
        for a, b in combinations(sorted(neigh), 2):
            graph[a].add(b)
            graph[b].add(a)
        cliques.append(frozenset(neigh | {node}))
        remaining.remove(node)

    maximal: list[frozenset[str]] = []
    for idx, c in enumerate(cliques):
        dominated = any(
            c < other or (c == other and j < idx)
            for j, other in enumerate(cliques)
            if j != idx
        )
        if not dominated:
            maximal.append(c)
    return maximal


def _spanning_forest(cliques: Sequence[frozenset[str]]) -> list[tuple[int, int]]:
    """Kruskal maximum-weight spanning forest, weight = separator size."""
    candidates = []
    for i, j in combinations(range(len(cliques)), 2):
        weight = len(cliques[i] & cliques[j])
        if weight > 0:
            candidates.append((-weight, i, j))
    candidates.sort()

    root = list(range(len(cliques)))

    def find(x: int) -> int:
        while root[x] != x:
            root[x] = root[root[x]]
            x = root[x]
        return x

    edges = []
    for _, i, j in candidates:
        ri, rj = find(i), find(j)
        if ri != rj:
            root[ri] = rj
            edges.append((i, j))
    return edges
