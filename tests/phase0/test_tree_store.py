"""Tests for TreeStore: invariants, paths, branching and cascading removal."""

import pytest

from canopy.models import (
    DEFAULT_BRANCH_LABEL,
    ROOT_LABEL,
    ROOT_NODE_ID,
    Edge,
    Message,
    Node,
    TreeSnapshot,
)
from canopy.trees.store import (
    InvalidOperationError,
    NodeNotFoundError,
    TreeIntegrityError,
    TreeStore,
)
from tests.fixtures import build_chain, model, user


def _roots(store: TreeStore) -> list[str]:
    targets = {e.target for e in store.edges()}
    return [nid for nid in store.node_ids() if nid not in targets]


class TestRootInvariant:
    def test_fresh_store_has_only_root(self, store: TreeStore):
        assert store.node_ids() == [ROOT_NODE_ID]
        assert store.get_node(ROOT_NODE_ID).label == ROOT_LABEL
        assert store.active_node_id == ROOT_NODE_ID

    def test_exactly_one_root_after_mutations(self, store: TreeStore):
        a = store.create_branch(ROOT_NODE_ID)
        b = store.create_branch(a)
        store.create_response_node(b)
        store.create_branch(ROOT_NODE_ID)
        store.delete_node_and_descendants(b)
        assert _roots(store) == [ROOT_NODE_ID]

    def test_root_cannot_be_deleted(self, store: TreeStore):
        with pytest.raises(InvalidOperationError):
            store.delete_node_and_descendants(ROOT_NODE_ID)
        assert store.has_node(ROOT_NODE_ID)

    def test_every_non_root_node_has_one_parent(self, store: TreeStore):
        a = store.create_branch(ROOT_NODE_ID)
        store.create_branch(a)
        store.create_branch(a)
        targets = [e.target for e in store.edges()]
        assert len(targets) == len(set(targets)) == len(store.node_ids()) - 1


class TestCreateBranch:
    def test_returns_new_empty_node(self, store: TreeStore):
        new_id = store.create_branch(ROOT_NODE_ID, "Idea")
        node = store.get_node(new_id)
        assert node.label == "Idea"
        assert node.chat_history == []
        assert store.parent_of(new_id) == ROOT_NODE_ID

    def test_default_label(self, store: TreeStore):
        assert store.get_node(store.create_branch(ROOT_NODE_ID)).label == DEFAULT_BRANCH_LABEL

    def test_missing_source_raises(self, store: TreeStore):
        with pytest.raises(NodeNotFoundError):
            store.create_branch("nope")

    def test_positions_offset_from_source(self, store: TreeStore):
        root = store.get_node(ROOT_NODE_ID)
        branch = store.get_node(store.create_branch(ROOT_NODE_ID))
        response = store.get_node(store.create_response_node(ROOT_NODE_ID))
        assert branch.position.x == root.position.x + 350
        assert branch.position.y == root.position.y + 250
        assert response.position.x == root.position.x
        assert response.position.y == root.position.y + 250


class TestPathToRoot:
    def test_starts_at_root_ends_at_node(self, store: TreeStore):
        chain = build_chain(store, 3)
        path = store.path_to_root(chain[-1])
        assert path == [ROOT_NODE_ID, *chain]
        assert len(path) == 3 + 1

    def test_root_path_is_itself(self, store: TreeStore):
        assert store.path_to_root(ROOT_NODE_ID) == [ROOT_NODE_ID]

    def test_idempotent(self, store: TreeStore):
        chain = build_chain(store, 4)
        assert store.path_to_root(chain[-1]) == store.path_to_root(chain[-1])

    def test_missing_node_raises(self, store: TreeStore):
        with pytest.raises(NodeNotFoundError):
            store.path_to_root("ghost")

    def test_unreachable_node_is_integrity_error(self):
        snapshot = TreeSnapshot(
            nodes=[
                Node(id=ROOT_NODE_ID, label=ROOT_LABEL),
                Node(id="a", label="A"),
                Node(id="b", label="B"),
            ],
            edges=[Edge(id="e-a-b", source="a", target="b")],
        )
        store = TreeStore.from_snapshot(snapshot)
        with pytest.raises(TreeIntegrityError):
            store.path_to_root("b")

    def test_active_path_includes_edges(self, store: TreeStore):
        a, b = build_chain(store, 2)
        active = store.active_path(b)
        assert active.node_ids == [ROOT_NODE_ID, a, b]
        assert active.edge_ids == [f"e-{ROOT_NODE_ID}-{a}", f"e-{a}-{b}"]

    def test_path_messages_in_conversation_order(self, store: TreeStore):
        store.add_message(ROOT_NODE_ID, user("one"))
        a = store.create_response_node(ROOT_NODE_ID)
        store.add_message(a, user("two"))
        b = store.create_response_node(a)
        store.add_message(b, user("three"))
        assert [m.content for m in store.path_messages(b)] == ["one", "two", "three"]

    def test_child_records_branch_point(self, store: TreeStore):
        store.add_message(ROOT_NODE_ID, user("one"))
        store.add_message(ROOT_NODE_ID, model("reply"))
        a = store.create_branch(ROOT_NODE_ID)
        assert store.get_node(a).branch_point == 2
        assert store.get_node(ROOT_NODE_ID).branch_point is None

    def test_parent_messages_after_branch_not_on_child_path(self, store: TreeStore):
        store.add_message(ROOT_NODE_ID, user("before"))
        a = store.create_branch(ROOT_NODE_ID)
        store.add_message(ROOT_NODE_ID, user("after"))
        store.add_message(a, user("mine"))

        assert [m.content for m in store.path_messages(a)] == ["before", "mine"]
        assert [m.content for m in store.path_messages(ROOT_NODE_ID)] == ["before", "after"]

    def test_branch_point_survives_snapshot(self, store: TreeStore):
        store.add_message(ROOT_NODE_ID, user("before"))
        a = store.create_branch(ROOT_NODE_ID)
        store.add_message(ROOT_NODE_ID, user("after"))

        restored = TreeStore.from_snapshot(
            TreeSnapshot.model_validate_json(store.snapshot().model_dump_json())
        )
        assert [m.content for m in restored.path_messages(a)] == ["before"]

    def test_nodes_without_branch_point_see_whole_parent(self, store: TreeStore):
        snapshot = TreeSnapshot(
            nodes=[
                Node(id=ROOT_NODE_ID, label="r", chat_history=[user("one"), user("two")]),
                Node(id="a", label="a"),
            ],
            edges=[Edge(id=f"e-{ROOT_NODE_ID}-a", source=ROOT_NODE_ID, target="a")],
            active_node_id=ROOT_NODE_ID,
        )
        restored = TreeStore.from_snapshot(snapshot)
        assert [m.content for m in restored.path_messages("a")] == ["one", "two"]


class TestResetNode:
    def test_descendants_are_gone(self, store: TreeStore):
        a = store.create_branch(ROOT_NODE_ID)
        b = store.create_branch(a)
        c = store.create_response_node(b)
        store.add_message(a, user("hi"))

        removed = store.reset_node(a)

        assert set(removed) == {b, c}
        with pytest.raises(NodeNotFoundError):
            store.path_to_root(c)
        assert store.get_node(a).chat_history == []
        assert store.path_to_root(a) == [ROOT_NODE_ID, a]

    def test_resets_label(self, store: TreeStore):
        a = store.create_branch(ROOT_NODE_ID, "Custom")
        store.reset_node(a)
        assert store.get_node(a).label == DEFAULT_BRANCH_LABEL

    def test_root_reset_restores_root_label(self, store: TreeStore):
        store.set_label(ROOT_NODE_ID, "Renamed")
        store.add_message(ROOT_NODE_ID, user("x"))
        store.create_branch(ROOT_NODE_ID)
        store.reset_node(ROOT_NODE_ID)
        assert store.node_ids() == [ROOT_NODE_ID]
        assert store.get_node(ROOT_NODE_ID).label == ROOT_LABEL
        assert store.edges() == []

    def test_absent_node_is_noop(self, store: TreeStore):
        assert store.reset_node("ghost") == []

    def test_notifies_listeners_with_node_and_descendants(self, store: TreeStore):
        seen: list[list[str]] = []
        store.add_removal_listener(seen.append)
        a = store.create_branch(ROOT_NODE_ID)
        b = store.create_branch(a)
        store.reset_node(a)
        assert seen == [[b, a]]

    def test_active_node_falls_back_to_root(self, store: TreeStore):
        a = store.create_branch(ROOT_NODE_ID)
        b = store.create_branch(a)
        store.set_active_node(b)
        store.reset_node(a)
        assert store.active_node_id == ROOT_NODE_ID


class TestDeleteNode:
    def test_removes_node_and_subtree(self, store: TreeStore):
        a = store.create_branch(ROOT_NODE_ID)
        b = store.create_branch(a)
        sibling = store.create_branch(ROOT_NODE_ID)

        removed = store.delete_node_and_descendants(a)

        assert set(removed) == {a, b}
        assert set(store.node_ids()) == {ROOT_NODE_ID, sibling}
        assert all(a not in (e.source, e.target) for e in store.edges())

    def test_absent_node_returns_empty(self, store: TreeStore):
        assert store.delete_node_and_descendants("ghost") == []

    def test_notifies_listeners(self, store: TreeStore):
        seen: list[str] = []
        store.add_removal_listener(seen.extend)
        a = store.create_branch(ROOT_NODE_ID)
        store.delete_node_and_descendants(a)
        assert seen == [a]


class TestMessages:
    def test_reads_are_copies(self, store: TreeStore):
        store.add_message(ROOT_NODE_ID, user("hi"))
        node = store.get_node(ROOT_NODE_ID)
        node.chat_history.append(user("sneaky"))
        node.label = "changed"
        assert len(store.get_node(ROOT_NODE_ID).chat_history) == 1
        assert store.get_node(ROOT_NODE_ID).label == ROOT_LABEL

    def test_update_last_message(self, store: TreeStore):
        store.add_message(ROOT_NODE_ID, Message(role="model", content=""))
        store.update_last_message(ROOT_NODE_ID, content="partial")
        assert store.get_node(ROOT_NODE_ID).chat_history[-1].content == "partial"

    def test_update_without_messages_raises(self, store: TreeStore):
        with pytest.raises(InvalidOperationError):
            store.update_last_message(ROOT_NODE_ID, content="x")

    def test_remove_last_message(self, store: TreeStore):
        store.add_message(ROOT_NODE_ID, user("a"))
        store.add_message(ROOT_NODE_ID, user("b"))
        removed = store.remove_last_message(ROOT_NODE_ID)
        assert removed is not None and removed.content == "b"
        assert store.remove_last_message(ROOT_NODE_ID).content == "a"
        assert store.remove_last_message(ROOT_NODE_ID) is None


class TestSnapshots:
    def test_round_trip_preserves_structure(self, store: TreeStore):
        a = store.create_branch(ROOT_NODE_ID, "A")
        store.add_message(a, user("hello"))
        store.set_active_node(a)

        restored = TreeStore.from_snapshot(store.snapshot())

        assert set(restored.node_ids()) == {ROOT_NODE_ID, a}
        assert restored.active_node_id == a
        assert restored.get_node(a).chat_history[0].content == "hello"

    def test_missing_root_is_reinserted(self):
        snapshot = TreeSnapshot(nodes=[Node(id="x", label="X")], edges=[])
        store = TreeStore.from_snapshot(snapshot)
        assert store.has_node(ROOT_NODE_ID)
        assert store.active_node_id == ROOT_NODE_ID

    def test_dangling_edges_dropped(self):
        snapshot = TreeSnapshot(
            nodes=[Node(id=ROOT_NODE_ID, label=ROOT_LABEL)],
            edges=[Edge(id="e-root-gone", source=ROOT_NODE_ID, target="gone")],
        )
        assert TreeStore.from_snapshot(snapshot).edges() == []

    def test_clear(self, store: TreeStore):
        seen: list[str] = []
        store.add_removal_listener(seen.extend)
        a = store.create_branch(ROOT_NODE_ID)
        store.clear()
        assert store.node_ids() == [ROOT_NODE_ID]
        assert seen == [a]
