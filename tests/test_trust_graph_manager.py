import pytest

from engine.errors import InvalidAllocationError
from engine.trust_graph_manager import TrustGraphManager
from models.base import init_db


@pytest.fixture
def session():
    Session = init_db("sqlite:///:memory:")
    session = Session()
    yield session
    session.close()


@pytest.fixture
def manager(session):
    manager = TrustGraphManager(session)
    for node_id in ("anchor", "a", "b"):
        manager.add_node(node_id, label=f"{node_id}@example.com")
    return manager


def test_set_allocations_replaces_the_whole_row(manager):
    manager.set_allocations("a", {"b": 0.6, "anchor": 0.4})
    manager.set_allocations("a", {"b": 1.0})

    assert manager.get_allocations("a") == {"b": pytest.approx(1.0)}


def test_zero_proportions_are_not_stored(manager):
    manager.set_allocations("a", {"b": 1.0, "anchor": 0.0})

    assert manager.get_allocations("a") == {"b": pytest.approx(1.0)}


def test_empty_allocations_clear_the_row(manager):
    manager.set_allocations("a", {"b": 1.0})
    rows = manager.set_allocations("a", {})

    assert rows == []
    assert manager.get_allocations("a") == {}


@pytest.mark.parametrize(
    "allocations",
    [
        {"b": 0.5},
        {"b": 0.7, "anchor": 0.7},
        {"b": 1.5},
        {"ghost": 1.0},
    ],
)
def test_invalid_rows_are_rejected_and_nothing_changes(manager, allocations):
    manager.set_allocations("a", {"anchor": 1.0})

    with pytest.raises(InvalidAllocationError):
        manager.set_allocations("a", allocations)
    assert manager.get_allocations("a") == {"anchor": pytest.approx(1.0)}


def test_unknown_giver_is_rejected(manager):
    with pytest.raises(InvalidAllocationError):
        manager.set_allocations("ghost", {"a": 1.0})


def test_sum_within_tolerance_is_accepted(manager):
    manager.set_allocations("a", {"b": 0.5, "anchor": 0.495})

    assert sum(manager.get_allocations("a").values()) == pytest.approx(0.995)


def test_remove_self_allocation(manager):
    manager.set_allocations("anchor", {"anchor": 0.5, "a": 0.5})

    assert manager.remove_self_allocation("anchor") == 1
    assert manager.get_allocations("anchor") == {"a": pytest.approx(0.5)}
    assert manager.remove_self_allocation("anchor") == 0


def test_clear_allocations_resets_every_row(manager):
    manager.set_allocations("a", {"b": 1.0})
    manager.set_allocations("b", {"a": 1.0})

    assert manager.clear_allocations() == 2
    assert manager.get_allocations("a") == {}
    assert manager.get_allocations("b") == {}


def test_allocation_snapshot_carries_nodes_edges_and_anchor(manager):
    manager.set_allocations("a", {"b": 0.6, "anchor": 0.4})
    snapshot = manager.load_allocation_snapshot()

    assert sorted(snapshot.node_ids) == ["a", "anchor", "b"]
    assert snapshot.anchor_id == "anchor"
    assert {(e.giver, e.receiver): e.proportion for e in snapshot.edges} == {
        ("a", "b"): pytest.approx(0.6),
        ("a", "anchor"): pytest.approx(0.4),
    }


def test_allocation_snapshot_accepts_anchor_override(manager):
    assert manager.load_allocation_snapshot("a").anchor_id == "a"


def test_generated_node_ids_are_unique(session):
    manager = TrustGraphManager(session)
    first = manager.add_node(label="x")
    second = manager.add_node(label="y")

    assert first.id != second.id


def test_uncommitted_row_is_visible_until_rolled_back(manager, session):
    manager.set_allocations("a", {"anchor": 1.0})

    manager.set_allocations("a", {"b": 1.0}, commit=False)
    assert manager.get_allocations("a") == {"b": pytest.approx(1.0)}

    session.rollback()
    assert manager.get_allocations("a") == {"anchor": pytest.approx(1.0)}
