"""Tree store: the owned node/edge aggregate behind an explicit command API.

Every read returns a copy. Structural mutations go through the methods below,
which keep the tree rooted at ROOT_NODE_ID, acyclic and fully reachable.
"""

import logging
from collections import defaultdict, deque
from collections.abc import Callable, Iterable
from uuid import uuid4

from canopy.models import (
    DEFAULT_BRANCH_LABEL,
    ROOT_LABEL,
    ROOT_NODE_ID,
    ActivePath,
    Attachment,
    Edge,
    Message,
    Node,
    Position,
    TreeSnapshot,
)

logger = logging.getLogger(__name__)

RemovalListener = Callable[[list[str]], None]

# Layout offsets for newly created nodes (canvas units)
BRANCH_OFFSET = (350.0, 250.0)
RESPONSE_OFFSET = (0.0, 250.0)


def _make_root() -> Node:
    return Node(id=ROOT_NODE_ID, label=ROOT_LABEL, position=Position(x=250, y=50))


def _edge_id(source: str, target: str) -> str:
    return f"e-{source}-{target}"


class TreeStore:
    """Single-writer owner of the conversation tree."""

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {ROOT_NODE_ID: _make_root()}
        self._edges: dict[str, Edge] = {}
        self._active_node_id: str | None = ROOT_NODE_ID
        self._removal_listeners: list[RemovalListener] = []

    # -- Construction ------------------------------------------------------

    @classmethod
    def from_snapshot(cls, snapshot: TreeSnapshot) -> "TreeStore":
        """Rebuild a store from a persisted snapshot, repairing what it can."""
        store = cls()
        store._nodes = {n.id: n.model_copy(deep=True) for n in snapshot.nodes}
        store._edges = {}
        for edge in snapshot.edges:
            if edge.source not in store._nodes or edge.target not in store._nodes:
                logger.warning("Dropping dangling edge %s on load", edge.id)
                continue
            store._edges[edge.id] = edge.model_copy()
        store._ensure_root()
        active = snapshot.active_node_id
        store._active_node_id = active if active in store._nodes else ROOT_NODE_ID
        return store

    def snapshot(self) -> TreeSnapshot:
        return TreeSnapshot(
            nodes=[n.model_copy(deep=True) for n in self._nodes.values()],
            edges=[e.model_copy() for e in self._edges.values()],
            active_node_id=self._active_node_id,
        )

    def clear(self) -> None:
        """Drop everything and return to a root-only tree."""
        removed = [nid for nid in self._nodes if nid != ROOT_NODE_ID]
        self._nodes = {ROOT_NODE_ID: _make_root()}
        self._edges = {}
        self._active_node_id = ROOT_NODE_ID
        self._notify_removed(removed)

    def replace(self, snapshot: TreeSnapshot) -> None:
        """Swap in a different tree. Every node of the old one counts as removed."""
        removed = list(self._nodes)
        fresh = TreeStore.from_snapshot(snapshot)
        self._nodes = fresh._nodes
        self._edges = fresh._edges
        self._active_node_id = fresh._active_node_id
        self._notify_removed(removed)

    def add_removal_listener(self, listener: RemovalListener) -> None:
        """Register a callback invoked with the ids of removed nodes."""
        self._removal_listeners.append(listener)

    # -- Queries -----------------------------------------------------------

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def get_node(self, node_id: str) -> Node:
        return self._require(node_id).model_copy(deep=True)

    def node_ids(self) -> list[str]:
        return list(self._nodes)

    def edges(self) -> list[Edge]:
        return [e.model_copy() for e in self._edges.values()]

    def children(self, node_id: str) -> list[str]:
        return [e.target for e in self._edges.values() if e.source == node_id]

    def parent_of(self, node_id: str) -> str | None:
        self._require(node_id)
        for edge in self._edges.values():
            if edge.target == node_id:
                return edge.source
        return None

    @property
    def active_node_id(self) -> str | None:
        return self._active_node_id

    def set_active_node(self, node_id: str) -> None:
        self._require(node_id)
        self._active_node_id = node_id

    def path_to_root(self, node_id: str) -> list[str]:
        """Node ids from root down to node_id, inclusive.

        Raises:
            NodeNotFoundError: If node_id is not in the tree.
            TreeIntegrityError: If an edge points at a node that doesn't exist.
        """
        self._require(node_id)
        parent_of = {e.target: e.source for e in self._edges.values()}

        path = [node_id]
        visited = {node_id}
        current = node_id
        while current in parent_of:
            current = parent_of[current]
            if current not in self._nodes:
                raise TreeIntegrityError(f"Dangling edge into {path[-1]} from {current}")
            if current in visited:
                raise TreeIntegrityError(f"Cycle detected at {current}")
            visited.add(current)
            path.append(current)

        if current != ROOT_NODE_ID:
            raise TreeIntegrityError(f"Node {node_id} is not reachable from root")
        path.reverse()
        return path

    def active_path(self, node_id: str) -> ActivePath:
        node_ids = self.path_to_root(node_id)
        edge_ids = [_edge_id(a, b) for a, b in zip(node_ids, node_ids[1:])]
        return ActivePath(node_ids=node_ids, edge_ids=edge_ids)

    def path_messages(self, node_id: str) -> list[Message]:
        """All messages along root → node_id, in conversation order.

        Each ancestor contributes only the messages it had when the next node
        on the path was branched off it.
        """
        path = self.path_to_root(node_id)
        messages: list[Message] = []
        for nid, child_id in zip(path, path[1:] + [None]):
            history = self._nodes[nid].chat_history
            if child_id is not None:
                cut = self._nodes[child_id].branch_point
                if cut is not None:
                    history = history[:cut]
            messages.extend(m.model_copy(deep=True) for m in history)
        return messages

    def descendants(self, node_id: str) -> list[str]:
        """Breadth-first list of every node below node_id (not including it)."""
        outgoing: dict[str, list[str]] = defaultdict(list)
        for edge in self._edges.values():
            outgoing[edge.source].append(edge.target)

        found: list[str] = []
        seen: set[str] = set()
        queue = deque(outgoing.get(node_id, []))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            found.append(current)
            queue.extend(outgoing.get(current, []))
        return found

    # -- Node creation -----------------------------------------------------

    def create_branch(self, source_id: str, label: str = DEFAULT_BRANCH_LABEL) -> str:
        """Create a sibling-style branch off source_id. Returns the new node id."""
        return self._create_child(source_id, label, BRANCH_OFFSET)

    def create_response_node(self, source_id: str, label: str = DEFAULT_BRANCH_LABEL) -> str:
        """Create a node directly below source_id to continue the conversation."""
        return self._create_child(source_id, label, RESPONSE_OFFSET)

    def _create_child(self, source_id: str, label: str, offset: tuple[float, float]) -> str:
        source = self._require(source_id)
        new_id = uuid4().hex
        self._nodes[new_id] = Node(
            id=new_id,
            label=label,
            position=Position(
                x=source.position.x + offset[0],
                y=source.position.y + offset[1],
            ),
            branch_point=len(source.chat_history),
        )
        edge = Edge(id=_edge_id(source_id, new_id), source=source_id, target=new_id)
        self._edges[edge.id] = edge
        logger.debug("Created node %s under %s", new_id, source_id)
        return new_id

    # -- Node data ---------------------------------------------------------

    def add_message(self, node_id: str, message: Message) -> None:
        self._require(node_id).chat_history.append(message.model_copy(deep=True))

    def update_last_message(
        self,
        node_id: str,
        *,
        content: str | None = None,
        attachments: Iterable[Attachment] | None = None,
    ) -> None:
        """Rewrite the newest message in place (streaming placeholder updates)."""
        node = self._require(node_id)
        if not node.chat_history:
            raise InvalidOperationError(f"Node {node_id} has no messages to update")
        last = node.chat_history[-1]
        if content is not None:
            last.content = content
        if attachments is not None:
            last.attachments = [a.model_copy() for a in attachments]

    def remove_last_message(self, node_id: str) -> Message | None:
        node = self._require(node_id)
        if not node.chat_history:
            return None
        return node.chat_history.pop()

    def set_label(self, node_id: str, label: str) -> None:
        self._require(node_id).label = label

    # -- Structural removal ------------------------------------------------

    def reset_node(self, node_id: str) -> list[str]:
        """Clear node_id's history and label and remove its whole subtree.

        Returns the removed descendant ids. No-op when node_id is absent.
        """
        node = self._nodes.get(node_id)
        if node is None:
            return []
        removed = self._remove_nodes(self.descendants(node_id))
        node.chat_history = []
        node.label = ROOT_LABEL if node_id == ROOT_NODE_ID else DEFAULT_BRANCH_LABEL
        # The node's own session is stale once its history is gone
        self._notify_removed(removed + [node_id])
        return removed

    def delete_node_and_descendants(self, node_id: str) -> list[str]:
        """Remove node_id and everything below it. Root can't be deleted."""
        if node_id == ROOT_NODE_ID:
            raise InvalidOperationError("The root node cannot be deleted")
        if node_id not in self._nodes:
            return []
        removed = self._remove_nodes(self.descendants(node_id) + [node_id])
        self._notify_removed(removed)
        return removed

    def _remove_nodes(self, node_ids: list[str]) -> list[str]:
        doomed = set(node_ids)
        for nid in node_ids:
            self._nodes.pop(nid, None)
        self._edges = {
            eid: e
            for eid, e in self._edges.items()
            if e.source not in doomed and e.target not in doomed
        }
        if self._active_node_id in doomed:
            self._active_node_id = ROOT_NODE_ID
        self._ensure_root()
        return node_ids

    def _ensure_root(self) -> None:
        if ROOT_NODE_ID not in self._nodes:
            logger.warning("Root missing after change set; re-inserting a fresh root")
            self._nodes[ROOT_NODE_ID] = _make_root()
        self._edges = {
            eid: e for eid, e in self._edges.items() if e.target != ROOT_NODE_ID
        }

    def _notify_removed(self, node_ids: list[str]) -> None:
        if not node_ids:
            return
        for listener in self._removal_listeners:
            listener(list(node_ids))

    def _require(self, node_id: str) -> Node:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NodeNotFoundError(node_id)


class NodeNotFoundError(Exception):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class InvalidOperationError(Exception):
    pass


class TreeIntegrityError(Exception):
    """A structural invariant was broken. Indicates a bug, not user error."""
