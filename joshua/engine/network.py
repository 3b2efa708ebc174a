"""
Bayesian Dependency Network.

A DAG over risk-factor nodes. Each node is binary (low / high risk) and
carries a conditional probability table keyed by its parents' states.

Structure learning (offline, batch):
- Pairwise Pearson correlation of historical factor series
- Edge kept when |r| > threshold; direction from lag-1 cross-correlation
- Strongest candidates inserted first; edges that would close a cycle are
  rejected and recorded, never reordered
- CPTs estimated from discretized frequency counts (Dirichlet pseudo-counts)

Concurrency: inference only ever runs against a frozen snapshot. Relearning
builds a new network and swaps it in through NetworkRegistry under an
exclusive lock (single writer, many readers).
"""

import threading
from dataclasses import dataclass
from itertools import combinations, product
from typing import Mapping, Optional, Sequence

import numpy as np
import structlog

from joshua.config import Settings, settings as default_settings
from joshua.core.exceptions import ConfigurationError, CyclicDependencyError
from joshua.engine.inference import Factor, JunctionTree, PropagationResult

logger = structlog.get_logger(__name__)

N_STATES: int = 2
STATE_LABELS: tuple[str, ...] = ("low", "high")


@dataclass(frozen=True)
class Edge:
    """A directed dependency learned from historical co-movement."""
    parent: str
    child: str
    strength: float          # |r|
    correlation: float       # signed Pearson r


@dataclass(frozen=True)
class RejectedEdge:
    """A candidate edge that structure learning refused, and why."""
    parent: str
    child: str
    correlation: float
    reason: str              # "cycle" | "max_parents"


class BayesianNetwork:
    """
    Directed acyclic dependency network with binary nodes.

    The DAG invariant is enforced at insertion time: add_edge raises
    CyclicDependencyError rather than accepting or silently dropping.
    """

    def __init__(self):
        self._nodes: list[str] = []
        self._parents: dict[str, list[str]] = {}
        self._children: dict[str, list[str]] = {}
        self._edges: dict[tuple[str, str], Edge] = {}
        self._cpts: dict[str, np.ndarray] = {}
        self.rejected_edges: list[RejectedEdge] = []
        self._frozen = False
        self._tree: Optional[JunctionTree] = None
        self._priors: Optional[PropagationResult] = None

    # ── Structure ─────────────────────────────────────────────────────────

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(self._nodes)

    @property
    def edges(self) -> tuple[Edge, ...]:
        return tuple(self._edges.values())

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def __contains__(self, node: str) -> bool:
        return node in self._parents

    def __len__(self) -> int:
        return len(self._nodes)

    def parents(self, node: str) -> tuple[str, ...]:
        return tuple(self._parents[node])

    def children(self, node: str) -> tuple[str, ...]:
        return tuple(self._children[node])

    def add_node(self, name: str, prior: Optional[Sequence[float]] = None) -> None:
        self._check_mutable()
        if name in self._parents:
            return
        self._nodes.append(name)
        self._parents[name] = []
        self._children[name] = []
        table = np.full(N_STATES, 1.0 / N_STATES) if prior is None else _as_distribution(prior)
        self._cpts[name] = table

    def add_edge(
        self,
        parent: str,
        child: str,
        strength: float = 1.0,
        correlation: Optional[float] = None,
    ) -> Edge:
        """
        Insert parent -> child.

        Raises:
            CyclicDependencyError: the edge is a self-loop or child already
                reaches parent.
        """
        self._check_mutable()
        for n in (parent, child):
            if n not in self._parents:
                self.add_node(n)
        if (parent, child) in self._edges:
            return self._edges[(parent, child)]
        if parent == child or self.has_path(child, parent):
            raise CyclicDependencyError(parent, child)

        edge = Edge(
            parent=parent,
            child=child,
            strength=float(strength),
            correlation=float(correlation if correlation is not None else strength),
        )
        self._edges[(parent, child)] = edge
        self._parents[child].append(parent)
        self._children[parent].append(child)
        # Parent set changed: the old table no longer has the right shape
        self._cpts[child] = np.full((N_STATES,) * len(self._parents[child]) + (N_STATES,), 1.0 / N_STATES)
        return edge

    def has_path(self, src: str, dst: str) -> bool:
        """Whether dst is reachable from src along directed edges."""
        stack = [src]
        seen = set()
        while stack:
            n = stack.pop()
            if n == dst:
                return True
            if n in seen:
                continue
            seen.add(n)
            stack.extend(self._children.get(n, ()))
        return False

    def topological_order(self) -> list[str]:
        indegree = {n: len(self._parents[n]) for n in self._nodes}
        ready = sorted(n for n, d in indegree.items() if d == 0)
        order = []
        while ready:
            n = ready.pop(0)
            order.append(n)
            for c in sorted(self._children[n]):
                indegree[c] -= 1
                if indegree[c] == 0:
                    ready.append(c)
            ready.sort()
        return order

    # ── Conditional probability tables ────────────────────────────────────

    def set_cpt(self, node: str, table) -> None:
        """
        Set P(node | parents).

        table has shape (2,) * len(parents) + (2,); the last axis is the
        node's own state and must sum to 1 for every parent combination.
        """
        self._check_mutable()
        arr = np.asarray(table, dtype=float)
        expected = (N_STATES,) * len(self._parents[node]) + (N_STATES,)
        if arr.shape != expected:
            raise ConfigurationError(
                f"CPT for {node!r} must have shape {expected}, got {arr.shape}",
                config_key=node,
            )
        if np.any(arr < 0) or not np.allclose(arr.sum(axis=-1), 1.0, atol=1e-9):
            raise ConfigurationError(
                f"CPT rows for {node!r} must be non-negative and sum to 1",
                config_key=node,
            )
        self._cpts[node] = arr

    def cpt(self, node: str) -> np.ndarray:
        return self._cpts[node].copy()

    def cpt_table(self, node: str) -> dict[tuple[int, ...], tuple[float, ...]]:
        """CPT keyed by parent-state combination (in parents() order)."""
        arr = self._cpts[node]
        k = len(self._parents[node])
        return {
            states: tuple(float(p) for p in arr[states])
            for states in product(range(N_STATES), repeat=k)
        }

    def cpt_factor(self, node: str) -> Factor:
        return Factor(tuple(self._parents[node]) + (node,), self._cpts[node])

    def estimate_cpts(
        self,
        history: Mapping[str, Sequence[float]],
        threshold: float = 0.5,
        pseudocount: float = 1.0,
    ) -> None:
        """
        Estimate every CPT from discretized frequency counts.

        A state is "high" when the observed value >= threshold. Parent
        combinations never observed fall back to the pseudo-count prior.
        """
        self._check_mutable()
        states = {
            name: (np.asarray(series, dtype=float) >= threshold).astype(int)
            for name, series in history.items()
            if name in self._parents
        }
        for node in self._nodes:
            if node not in states:
                continue
            pa = self._parents[node]
            if any(p not in states for p in pa):
                continue
            counts = np.full((N_STATES,) * len(pa) + (N_STATES,), float(pseudocount))
            child_states = states[node]
            parent_states = [states[p] for p in pa]
            for t in range(len(child_states)):
                idx = tuple(int(ps[t]) for ps in parent_states) + (int(child_states[t]),)
                counts[idx] += 1.0
            totals = counts.sum(axis=-1, keepdims=True)
            self._cpts[node] = np.where(totals > 0, counts / np.where(totals > 0, totals, 1.0), 1.0 / N_STATES)

    # ── Learning ──────────────────────────────────────────────────────────

    @classmethod
    def learn(
        cls,
        history: Mapping[str, Sequence[float]],
        config: Optional[Settings] = None,
    ) -> "BayesianNetwork":
        """
        Learn structure and CPTs from aligned historical factor series.

        Args:
            history: factor name -> series of normalized values, all the
                same length (one entry per past assessment cycle)
        """
        config = config or default_settings
        lengths = {len(s) for s in history.values()}
        if len(lengths) > 1:
            raise ConfigurationError(
                f"historical series must be aligned, got lengths {sorted(lengths)}",
                config_key="history",
            )

        network = cls()
        for name in sorted(history):
            network.add_node(name)

        n_points = lengths.pop() if lengths else 0
        if n_points < 3:
            logger.info("structure_learning_skipped", n_points=n_points, n_nodes=len(network))
        else:
            arrays = {name: np.asarray(history[name], dtype=float) for name in network.nodes}
            candidates = []
            for a, b in combinations(network.nodes, 2):
                r = _pearson(arrays[a], arrays[b])
                if r is None or abs(r) <= config.edge_correlation_threshold:
                    continue
                lead_ab = _pearson(arrays[a][:-1], arrays[b][1:]) or 0.0
                lead_ba = _pearson(arrays[b][:-1], arrays[a][1:]) or 0.0
                parent, child = (a, b) if abs(lead_ab) >= abs(lead_ba) else (b, a)
                candidates.append((-abs(r), parent, child, r))
            candidates.sort()

            for _, parent, child, r in candidates:
                if len(network.parents(child)) >= config.network_max_parents:
                    network.rejected_edges.append(RejectedEdge(parent, child, round(r, 4), "max_parents"))
                    logger.info("edge_rejected_max_parents", parent=parent, child=child, correlation=round(r, 4))
                    continue
                try:
                    network.add_edge(parent, child, strength=abs(r), correlation=r)
                except CyclicDependencyError as e:
                    network.rejected_edges.append(RejectedEdge(parent, child, round(r, 4), "cycle"))
                    logger.warning("edge_rejected_cycle", parent=parent, child=child, correlation=round(r, 4), error=str(e))

        network.estimate_cpts(
            history,
            threshold=config.discretization_threshold,
            pseudocount=config.cpt_pseudocount,
        )
        logger.info(
            "structure_learning_complete",
            n_nodes=len(network),
            n_edges=len(network.edges),
            n_rejected=len(network.rejected_edges),
            n_points=n_points,
        )
        return network

    # ── Inference support ─────────────────────────────────────────────────

    def junction_tree(self) -> JunctionTree:
        """The clique tree for this network (cached once frozen)."""
        if self._tree is not None:
            return self._tree
        tree = JunctionTree(
            nodes=self._nodes,
            parents=self._parents,
            cpts={n: self.cpt_factor(n) for n in self._nodes},
            cardinality={n: N_STATES for n in self._nodes},
        )
        if self._frozen:
            self._tree = tree
        return tree

    def prior_marginals(self, max_iterations: int = 100, tolerance: float = 1e-6) -> PropagationResult:
        """Marginals with no evidence (cached once frozen)."""
        if self._priors is not None:
            return self._priors
        priors = self.junction_tree().propagate(None, max_iterations=max_iterations, tolerance=tolerance)
        if self._frozen:
            self._priors = priors
        return priors

    def freeze(self, max_iterations: int = 100, tolerance: float = 1e-6) -> "BayesianNetwork":
        """Make this network an immutable, shareable inference snapshot."""
        if not self._frozen:
            self._frozen = True
            self.junction_tree()
            self.prior_marginals(max_iterations=max_iterations, tolerance=tolerance)
        return self

    def copy(self) -> "BayesianNetwork":
        """Mutable deep copy (e.g. to edit a frozen snapshot)."""
        other = BayesianNetwork()
        other._nodes = list(self._nodes)
        other._parents = {k: list(v) for k, v in self._parents.items()}
        other._children = {k: list(v) for k, v in self._children.items()}
        other._edges = dict(self._edges)
        other._cpts = {k: v.copy() for k, v in self._cpts.items()}
        other.rejected_edges = list(self.rejected_edges)
        return other

    def _check_mutable(self) -> None:
        if self._frozen:
            raise ConfigurationError(
                "network snapshot is frozen; relearn or copy() before editing",
                config_key="network",
            )


class NetworkRegistry:
    """
    Holds the current network snapshot.

    snapshot() hands out the frozen network by reference; relearn() builds
    a replacement off to the side and swaps it in under an exclusive lock,
    so in-flight inference keeps its own immutable snapshot.
    """

    def __init__(self, network: Optional[BayesianNetwork] = None, config: Optional[Settings] = None):
        self.config = config or default_settings
        self._lock = threading.Lock()
        self._current = self._freeze(network or BayesianNetwork())
        self.version = 1

    def snapshot(self) -> BayesianNetwork:
        return self._current

    def relearn(self, history: Mapping[str, Sequence[float]]) -> BayesianNetwork:
        """Exclusive batch rebuild from the historical corpus."""
        with self._lock:
            network = self._freeze(BayesianNetwork.learn(history, self.config))
            self._current = network
            self.version += 1
        logger.info("network_relearned", version=self.version, n_nodes=len(network), n_edges=len(network.edges))
        return network

    def _freeze(self, network: BayesianNetwork) -> BayesianNetwork:
        return network.freeze(
            max_iterations=self.config.bp_max_iterations,
            tolerance=self.config.bp_tolerance,
        )


def _pearson(x: np.ndarray, y: np.ndarray) -> Optional[float]:
    """Pearson r, or None when either series is constant or too short."""
    if len(x) < 2 or np.std(x) == 0 or np.std(y) == 0:
        return None
    return float(np.corrcoef(x, y)[0, 1])


def _as_distribution(prior: Sequence[float]) -> np.ndarray:
    arr = np.asarray(prior, dtype=float)
    if arr.shape != (N_STATES,) or np.any(arr < 0) or arr.sum() <= 0:
        raise ConfigurationError(f"invalid prior {list(prior)}", config_key="prior")
    return arr / arr.sum()
