"""
Bayesian Dependency Network Tests.
"""

import threading

import numpy as np
import pytest

from joshua.config import Settings
from joshua.core.exceptions import ConfigurationError, CyclicDependencyError
from joshua.engine.network import BayesianNetwork, NetworkRegistry


def lagged_history(n=200, seed=3):
    """a leads b by one step; noise is unrelated to both."""
    rng = np.random.default_rng(seed)
    a = rng.random(n)
    b = np.empty(n)
    b[0] = a[0]
    b[1:] = 0.5 * a[1:] + 0.5 * a[:-1]
    noise = rng.random(n)
    return {"a": a.tolist(), "b": b.tolist(), "noise": noise.tolist()}


def two_parent_history(n=300, seed=11):
    """a and d both lead c; c correlates with each at r ≈ 0.5."""
    rng = np.random.default_rng(seed)
    a = rng.random(n)
    d = rng.random(n)
    c = np.empty(n)
    c[0] = (a[0] + d[0]) / 2
    c[1:] = (a[1:] + a[:-1] + d[1:] + d[:-1]) / 4
    return {"a": a.tolist(), "c": c.tolist(), "d": d.tolist()}


class TestStructure:
    def setup_method(self):
        self.net = BayesianNetwork()
        for n in ("a", "b", "c"):
            self.net.add_node(n)

    def test_add_edge(self):
        edge = self.net.add_edge("a", "b", strength=0.6, correlation=-0.6)
        assert self.net.parents("b") == ("a",)
        assert self.net.children("a") == ("b",)
        assert edge.correlation == -0.6

    def test_cycle_rejected(self):
        """The DAG invariant is enforced at insertion time."""
        self.net.add_edge("a", "b")
        self.net.add_edge("b", "c")
        with pytest.raises(CyclicDependencyError) as exc:
            self.net.add_edge("c", "a")
        assert (exc.value.parent, exc.value.child) == ("c", "a")
        assert self.net.parents("a") == ()

    def test_self_loop_rejected(self):
        with pytest.raises(CyclicDependencyError):
            self.net.add_edge("a", "a")

    def test_duplicate_edge_is_idempotent(self):
        first = self.net.add_edge("a", "b")
        assert self.net.add_edge("a", "b") is first
        assert len(self.net.edges) == 1

    def test_topological_order(self):
        self.net.add_edge("c", "a")
        self.net.add_edge("a", "b")
        order = self.net.topological_order()
        assert order.index("c") < order.index("a") < order.index("b")

    def test_has_path(self):
        self.net.add_edge("a", "b")
        self.net.add_edge("b", "c")
        assert self.net.has_path("a", "c")
        assert not self.net.has_path("c", "a")


class TestCPTs:
    def setup_method(self):
        self.net = BayesianNetwork()
        self.net.add_node("a", prior=[0.7, 0.3])
        self.net.add_node("b")
        self.net.add_edge("a", "b")

    def test_prior_normalized(self):
        assert self.net.cpt("a").tolist() == pytest.approx([0.7, 0.3])

    def test_new_parent_resets_table_shape(self):
        assert self.net.cpt("b").shape == (2, 2)

    def test_set_cpt_validates_shape(self):
        with pytest.raises(ConfigurationError):
            self.net.set_cpt("b", [0.5, 0.5])

    def test_set_cpt_validates_rows(self):
        with pytest.raises(ConfigurationError):
            self.net.set_cpt("b", [[0.5, 0.6], [0.2, 0.8]])

    def test_cpt_table_keyed_by_parent_states(self):
        self.net.set_cpt("b", [[0.9, 0.1], [0.2, 0.8]])
        table = self.net.cpt_table("b")
        assert table[(0,)] == pytest.approx((0.9, 0.1))
        assert table[(1,)] == pytest.approx((0.2, 0.8))

    def test_estimate_cpts_from_counts(self):
        history = {"a": [0.9, 0.9, 0.9, 0.1, 0.1], "b": [0.8, 0.8, 0.8, 0.2, 0.2]}
        self.net.estimate_cpts(history, threshold=0.5, pseudocount=1.0)
        table = self.net.cpt_table("b")
        # parent high 3× with child high: (1+3)/(2+3)
        assert table[(1,)][1] == pytest.approx(4 / 5)
        assert table[(0,)][0] == pytest.approx(3 / 4)
        assert self.net.cpt("a")[1] == pytest.approx(4 / 7)


class TestLearning:
    def test_edge_direction_from_lead(self):
        net = BayesianNetwork.learn(lagged_history(), Settings())
        assert net.parents("b") == ("a",)
        assert net.parents("a") == ()
        assert net.parents("noise") == () and net.children("noise") == ()

    def test_strength_is_abs_correlation(self):
        net = BayesianNetwork.learn(lagged_history(), Settings())
        (edge,) = net.edges
        assert edge.strength == pytest.approx(abs(edge.correlation))
        assert edge.strength > 0.3

    def test_max_parents_rejection_recorded(self):
        net = BayesianNetwork.learn(two_parent_history(), Settings(network_max_parents=1))
        assert len(net.parents("c")) == 1
        assert [r.reason for r in net.rejected_edges] == ["max_parents"]
        assert net.rejected_edges[0].child == "c"

    def test_both_parents_kept_by_default(self):
        net = BayesianNetwork.learn(two_parent_history(), Settings())
        assert set(net.parents("c")) == {"a", "d"}
        assert net.rejected_edges == []

    def test_short_history_has_no_edges(self):
        net = BayesianNetwork.learn({"a": [0.1, 0.9], "b": [0.2, 0.8]}, Settings())
        assert net.nodes == ("a", "b")
        assert net.edges == ()

    def test_misaligned_history_rejected(self):
        with pytest.raises(ConfigurationError):
            BayesianNetwork.learn({"a": [0.1, 0.2, 0.3], "b": [0.1, 0.2]}, Settings())

    def test_learned_network_is_acyclic(self):
        net = BayesianNetwork.learn(two_parent_history(), Settings())
        assert len(net.topological_order()) == len(net)


class TestFreezing:
    def test_frozen_rejects_mutation(self):
        net = BayesianNetwork()
        net.add_node("a")
        net.freeze()
        with pytest.raises(ConfigurationError):
            net.add_node("b")
        with pytest.raises(ConfigurationError):
            net.set_cpt("a", [0.5, 0.5])

    def test_copy_is_mutable(self):
        net = BayesianNetwork()
        net.add_node("a")
        net.freeze()
        clone = net.copy()
        clone.add_node("b")
        assert "b" in clone and "b" not in net

    def test_prior_marginals_cached(self):
        net = BayesianNetwork()
        net.add_node("a", prior=[0.2, 0.8])
        net.freeze()
        assert net.prior_marginals() is net.prior_marginals()
        assert net.prior_marginals().probability("a") == pytest.approx(0.8)


class TestRegistry:
    def test_snapshot_is_frozen(self):
        registry = NetworkRegistry(config=Settings())
        assert registry.snapshot().is_frozen
        assert registry.version == 1

    def test_relearn_swaps_snapshot(self):
        registry = NetworkRegistry(config=Settings())
        old = registry.snapshot()
        new = registry.relearn(lagged_history())
        assert registry.snapshot() is new
        assert registry.version == 2
        assert len(old) == 0 and len(new) == 3

    def test_readers_keep_their_snapshot_during_relearn(self):
        """In-flight readers hold an immutable snapshot while a writer relearns."""
        registry = NetworkRegistry(config=Settings())
        registry.relearn(lagged_history(seed=1))
        seen = []

        def reader():
            snap = registry.snapshot()
            seen.append(snap.prior_marginals().probability("b"))

        threads = [threading.Thread(target=reader) for _ in range(4)]
        writer = threading.Thread(target=registry.relearn, args=(lagged_history(seed=2),))
        for t in threads + [writer]:
            t.start()
        for t in threads + [writer]:
            t.join()
        assert len(seen) == 4
        assert registry.version == 3
