import numpy as np
import pytest

from engine.contracts import AllocationEdge, AllocationSnapshot
from engine.errors import AnchorMissingError, NoNodesError
from engine.trust_matrix import build_trust_matrix


def _snapshot(node_ids, rows, anchor_id="anchor"):
    edges = [
        AllocationEdge(giver=giver, receiver=receiver, proportion=p)
        for giver, row in rows.items()
        for receiver, p in row.items()
    ]
    return AllocationSnapshot(node_ids=node_ids, anchor_id=anchor_id, edges=edges)


def test_empty_row_trusts_anchor_only():
    tm = build_trust_matrix(_snapshot(["anchor", "a", "b"], {"anchor": {"a": 1.0}, "a": {"b": 1.0}}))

    b = tm.index["b"]
    assert tm.matrix[b].tolist() == [1.0, 0.0, 0.0]
    assert tm.anchor_id == "anchor"
    assert tm.size == 3


def test_row_off_by_more_than_tolerance_is_renormalised():
    tm = build_trust_matrix(_snapshot(["anchor", "a", "b"], {"a": {"b": 0.3, "anchor": 0.2}}))

    row = tm.matrix[tm.index["a"]]
    assert row[tm.index["b"]] == pytest.approx(0.6)
    assert row[tm.index["anchor"]] == pytest.approx(0.4)
    assert row.sum() == pytest.approx(1.0)


def test_row_within_tolerance_is_left_as_allocated():
    tm = build_trust_matrix(_snapshot(["anchor", "a", "b"], {"a": {"b": 0.5, "anchor": 0.495}}))

    row = tm.matrix[tm.index["a"]]
    assert row[tm.index["b"]] == pytest.approx(0.5)
    assert row[tm.index["anchor"]] == pytest.approx(0.495)


def test_numerically_zero_row_counts_as_empty():
    tm = build_trust_matrix(_snapshot(["anchor", "a", "b"], {"a": {"b": 0.0005}}))

    row = tm.matrix[tm.index["a"]]
    assert row[tm.index["anchor"]] == 1.0
    assert row[tm.index["b"]] == 0.0


def test_edges_to_unknown_nodes_are_skipped():
    tm = build_trust_matrix(_snapshot(["anchor", "a"], {"a": {"ghost": 0.5, "anchor": 0.5}, "ghost": {"a": 1.0}}))

    # Only the 0.5 to the anchor survives, which is then renormalised.
    assert tm.matrix[tm.index["a"]].tolist() == pytest.approx([1.0, 0.0])


def test_no_nodes_raises():
    with pytest.raises(NoNodesError):
        build_trust_matrix(AllocationSnapshot(node_ids=[], anchor_id="anchor"))


def test_missing_anchor_raises():
    with pytest.raises(AnchorMissingError):
        build_trust_matrix(_snapshot(["a", "b"], {"a": {"b": 1.0}}))


def test_every_built_row_is_stochastic_within_tolerance():
    rng = np.random.default_rng(7)
    nodes = ["anchor"] + [f"n{i}" for i in range(6)]
    rows = {}
    for giver in nodes:
        weights = rng.random(len(nodes)) * rng.integers(0, 2, len(nodes))
        rows[giver] = {r: float(w) for r, w in zip(nodes, weights) if w > 0 and w <= 1.0}

    tm = build_trust_matrix(_snapshot(nodes, rows))

    assert np.all(tm.matrix >= 0.0)
    assert np.all(np.abs(tm.matrix.sum(axis=1) - 1.0) <= 0.01)
    # Rows within tolerance are kept as allocated; normalized() is exact.
    assert np.all(np.abs(tm.normalized().sum(axis=1) - 1.0) <= 1e-9)


def test_normalized_is_exactly_row_stochastic():
    tm = build_trust_matrix(_snapshot(["anchor", "a", "b"], {"a": {"b": 0.5, "anchor": 0.495}}))

    normalized = tm.normalized()
    assert normalized.sum(axis=1) == pytest.approx([1.0, 1.0, 1.0])
    # The stored matrix keeps the allocated values.
    assert tm.matrix[tm.index["a"]].sum() == pytest.approx(0.995)


def test_with_row_replaces_and_repairs_a_single_row():
    tm = build_trust_matrix(_snapshot(["anchor", "a", "b"], {"anchor": {"a": 1.0}, "a": {"b": 1.0}}))

    replaced = tm.with_row("a", {"a": 0.25, "b": 0.25})
    emptied = tm.with_row("a", {})

    a = tm.index["a"]
    assert replaced.matrix[a].tolist() == pytest.approx([0.0, 0.5, 0.5])
    assert emptied.matrix[a].tolist() == [1.0, 0.0, 0.0]
    # The source matrix is untouched.
    assert tm.matrix[a].tolist() == [0.0, 0.0, 1.0]
    np.testing.assert_array_equal(replaced.matrix[tm.index["anchor"]], tm.matrix[tm.index["anchor"]])
