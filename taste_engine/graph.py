"""Weighted, typed, directed graph with centrality scoring.

The graph is an arena: nodes and edges live in plain lists addressed by
integer slot, and every lookup (id, type, adjacency) goes through side tables
of slots.  It is rebuilt from scratch on every recompute and never mutated
concurrently, so no locking is done here.

Centrality measures follow the usual textbook definitions with two
simplifications worth knowing about:

* PageRank and HITS do **not** redistribute the rank mass of dangling nodes
  (nodes with no outgoing edges).  On the small pattern/episode graphs built
  per user this is harmless, but the scores of large sparse graphs will not
  sum to one.
* Betweenness is unweighted: edge weights are ignored when counting shortest
  paths.
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import numpy as np

from taste_engine.models import malformed
from taste_engine.wire import ensure_utc, from_iso, to_iso

_SECONDS_PER_DAY = 86400.0
_RECENCY_HALF_LIFE_DAYS = 30.0

# Weights of the combined importance score.
_W_PAGE_RANK = 0.30
_W_AUTHORITY = 0.25
_W_HUB = 0.15
_W_BETWEENNESS = 0.15
_W_RECENCY = 0.15


@dataclass
class GraphNode:
    id: str
    type: str
    payload: dict[str, Any]
    weight: float
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "weight": float(self.weight),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


@dataclass
class GraphEdge:
    id: str
    source: str
    target: str
    type: str
    weight: float
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "type": self.type,
            "weight": float(self.weight),
            "created_at": to_iso(self.created_at),
        }


@dataclass
class ImportanceScores:
    """Per-node centrality breakdown and the combined importance score."""

    page_rank: float
    hub_score: float
    authority_score: float
    betweenness: float
    recency_weight: float
    combined: float


def _label(value: Any) -> str:
    """Return the plain string of a node/edge type (enum members use their value)."""
    return value.value if isinstance(value, Enum) else str(value)


def edge_id(source: str, edge_type: str, target: str) -> str:
    return f"{source}|{edge_type}|{target}"


class CognitiveGraph:
    """Arena-backed graph of typed nodes and typed, weighted edges."""

    def __init__(self) -> None:
        self._nodes: list[GraphNode] = []
        self._edges: list[GraphEdge] = []
        self._node_slot: dict[str, int] = {}
        self._edge_slot: dict[str, int] = {}
        self._slots_by_type: dict[str, list[int]] = {}
        self._out: list[set[int]] = []
        self._in: list[set[int]] = []
        self._edges_out: list[list[int]] = []
        self._edges_in: list[list[int]] = []

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._node_slot

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_node(
        self,
        node_id: str,
        node_type: str,
        payload: dict[str, Any] | None,
        weight: float,
        timestamp: datetime,
    ) -> GraphNode:
        """Insert a node, or update payload/weight/``updated_at`` if it exists.

        Re-adding an existing id keeps its original type and ``created_at``.
        """
        timestamp = ensure_utc(timestamp)
        slot = self._node_slot.get(node_id)
        if slot is not None:
            node = self._nodes[slot]
            node.payload = dict(payload or {})
            node.weight = float(weight)
            node.updated_at = timestamp
            return node

        node = GraphNode(
            id=node_id,
            type=_label(node_type),
            payload=dict(payload or {}),
            weight=float(weight),
            created_at=timestamp,
            updated_at=timestamp,
        )
        slot = len(self._nodes)
        self._nodes.append(node)
        self._node_slot[node_id] = slot
        self._slots_by_type.setdefault(node.type, []).append(slot)
        self._out.append(set())
        self._in.append(set())
        self._edges_out.append([])
        self._edges_in.append([])
        return node

    def add_edge(
        self,
        source: str,
        target: str,
        edge_type: str,
        weight: float,
        timestamp: datetime,
    ) -> GraphEdge:
        """Insert or update the edge ``source|type|target``.

        Raises:
            KeyError: If either endpoint has not been added as a node.
        """
        if source not in self._node_slot:
            raise KeyError(f"Unknown source node: {source!r}")
        if target not in self._node_slot:
            raise KeyError(f"Unknown target node: {target!r}")

        eid = edge_id(source, _label(edge_type), target)
        slot = self._edge_slot.get(eid)
        if slot is not None:
            edge = self._edges[slot]
            edge.weight = float(weight)
            return edge

        edge = GraphEdge(
            id=eid,
            source=source,
            target=target,
            type=_label(edge_type),
            weight=float(weight),
            created_at=ensure_utc(timestamp),
        )
        slot = len(self._edges)
        self._edges.append(edge)
        self._edge_slot[eid] = slot
        s, t = self._node_slot[source], self._node_slot[target]
        self._out[s].add(t)
        self._in[t].add(s)
        self._edges_out[s].append(slot)
        self._edges_in[t].append(slot)
        return edge

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> GraphNode | None:
        slot = self._node_slot.get(node_id)
        return None if slot is None else self._nodes[slot]

    def get_edge(self, eid: str) -> GraphEdge | None:
        slot = self._edge_slot.get(eid)
        return None if slot is None else self._edges[slot]

    def nodes(self) -> list[GraphNode]:
        return list(self._nodes)

    def edges(self) -> list[GraphEdge]:
        return list(self._edges)

    def nodes_by_type(self, node_type: str) -> list[GraphNode]:
        return [self._nodes[s] for s in self._slots_by_type.get(_label(node_type), [])]

    def get_neighbors(self, node_id: str) -> list[str]:
        """Return ids of nodes reachable over one outgoing edge."""
        slot = self._node_slot.get(node_id)
        if slot is None:
            return []
        return [self._nodes[s].id for s in sorted(self._out[slot])]

    def get_incoming_neighbors(self, node_id: str) -> list[str]:
        slot = self._node_slot.get(node_id)
        if slot is None:
            return []
        return [self._nodes[s].id for s in sorted(self._in[slot])]

    def edges_from(self, node_id: str) -> list[GraphEdge]:
        slot = self._node_slot.get(node_id)
        if slot is None:
            return []
        return [self._edges[e] for e in self._edges_out[slot]]

    def edges_to(self, node_id: str) -> list[GraphEdge]:
        slot = self._node_slot.get(node_id)
        if slot is None:
            return []
        return [self._edges[e] for e in self._edges_in[slot]]

    # ------------------------------------------------------------------
    # Centrality
    # ------------------------------------------------------------------

    def _adjacency(self) -> np.ndarray:
        """Dense 0/1 matrix where ``A[i, j] == 1`` iff slot i links to slot j."""
        n = len(self._nodes)
        matrix = np.zeros((n, n), dtype=float)
        for source, targets in enumerate(self._out):
            for target in targets:
                matrix[source, target] = 1.0
        return matrix

    def compute_page_rank(
        self, damping: float = 0.85, iterations: int = 20
    ) -> dict[str, float]:
        """Return PageRank per node id.

        Starts from ``1/N`` and applies ``(1-d)/N + d * Σ rank(u)/outdeg(u)``
        over incoming neighbours for a fixed number of iterations.  Dangling
        mass is dropped, so an edgeless graph stays at exactly ``1/N``.
        """
        n = len(self._nodes)
        if n == 0:
            return {}
        adjacency = self._adjacency()
        out_degree = adjacency.sum(axis=1)
        inverse_degree = np.divide(
            1.0, out_degree, out=np.zeros_like(out_degree), where=out_degree > 0
        )
        base = (1.0 - damping) / n
        ranks = np.full(n, 1.0 / n)
        for _ in range(iterations):
            ranks = base + damping * adjacency.T.dot(ranks * inverse_degree)
        return {node.id: float(ranks[i]) for i, node in enumerate(self._nodes)}

    def compute_hits(
        self, iterations: int = 20
    ) -> tuple[dict[str, float], dict[str, float]]:
        """Return ``(hubs, authorities)`` per node id.

        Both vectors start at 1 and are L2-normalised after every iteration;
        a zero norm leaves the vector unscaled.
        """
        n = len(self._nodes)
        if n == 0:
            return {}, {}
        adjacency = self._adjacency()
        hubs = np.ones(n)
        authorities = np.ones(n)
        for _ in range(iterations):
            authorities = adjacency.T.dot(hubs)
            hubs = adjacency.dot(authorities)
            hubs = hubs / (float(np.linalg.norm(hubs)) or 1.0)
            authorities = authorities / (float(np.linalg.norm(authorities)) or 1.0)
        ids = [node.id for node in self._nodes]
        return (
            {nid: float(hubs[i]) for i, nid in enumerate(ids)},
            {nid: float(authorities[i]) for i, nid in enumerate(ids)},
        )

    def compute_betweenness(self) -> dict[str, float]:
        """Return directed, unweighted betweenness centrality (Brandes).

        Scores are multiplied by ``1/((n-1)(n-2))`` when ``n > 2``.
        """
        n = len(self._nodes)
        centrality = np.zeros(n)
        for source in range(n):
            stack: list[int] = []
            predecessors: list[list[int]] = [[] for _ in range(n)]
            sigma = np.zeros(n)
            sigma[source] = 1.0
            distance = np.full(n, -1, dtype=int)
            distance[source] = 0
            queue = deque([source])
            while queue:
                v = queue.popleft()
                stack.append(v)
                for w in sorted(self._out[v]):
                    if distance[w] < 0:
                        distance[w] = distance[v] + 1
                        queue.append(w)
                    if distance[w] == distance[v] + 1:
                        sigma[w] += sigma[v]
                        predecessors[w].append(v)

            delta = np.zeros(n)
            while stack:
                w = stack.pop()
                for v in predecessors[w]:
                    delta[v] += (sigma[v] / sigma[w]) * (1.0 + delta[w])
                if w != source:
                    centrality[w] += delta[w]

        if n > 2:
            centrality *= 1.0 / ((n - 1) * (n - 2))
        return {node.id: float(centrality[i]) for i, node in enumerate(self._nodes)}

    def compute_importance_scores(self, now: datetime) -> dict[str, ImportanceScores]:
        """Combine PageRank, HITS, betweenness and recency per node.

        ``recency = exp(-age_days / 30)`` measured from each node's
        ``updated_at`` to *now*.
        """
        now = ensure_utc(now)
        page_rank = self.compute_page_rank()
        hubs, authorities = self.compute_hits()
        betweenness = self.compute_betweenness()

        scores: dict[str, ImportanceScores] = {}
        for node in self._nodes:
            age_days = (now - node.updated_at).total_seconds() / _SECONDS_PER_DAY
            recency = math.exp(-age_days / _RECENCY_HALF_LIFE_DAYS)
            pr = page_rank.get(node.id, 0.0)
            hub = hubs.get(node.id, 0.0)
            auth = authorities.get(node.id, 0.0)
            between = betweenness.get(node.id, 0.0)
            combined = (
                _W_PAGE_RANK * pr
                + _W_AUTHORITY * auth
                + _W_HUB * hub
                + _W_BETWEENNESS * between
                + _W_RECENCY * recency
            )
            scores[node.id] = ImportanceScores(
                page_rank=pr,
                hub_score=hub,
                authority_score=auth,
                betweenness=between,
                recency_weight=recency,
                combined=combined,
            )
        return scores

    # ------------------------------------------------------------------
    # Introspection and persistence
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """Return node/edge counts, per-type node counts, mean degree and density."""
        n = len(self._nodes)
        m = len(self._edges)
        return {
            "node_count": n,
            "edge_count": m,
            "nodes_by_type": {t: len(s) for t, s in self._slots_by_type.items()},
            "avg_degree": (2.0 * m / n) if n else 0.0,
            "density": (m / (n * (n - 1))) if n > 1 else 0.0,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self._nodes],
            "edges": [edge.to_dict() for edge in self._edges],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CognitiveGraph:
        """Rebuild a graph from :meth:`to_dict` output.

        Raises:
            MalformedStateError: If the payload is structurally invalid or an
                edge references an unknown node.
        """
        graph = cls()
        with malformed("cognitive graph"):
            for raw in data["nodes"]:
                created = from_iso(raw["created_at"])
                node = graph.add_node(
                    str(raw["id"]),
                    str(raw["type"]),
                    raw.get("payload") or {},
                    float(raw["weight"]),
                    created,
                )
                node.updated_at = from_iso(raw.get("updated_at")) or created
            for raw in data["edges"]:
                graph.add_edge(
                    str(raw["source"]),
                    str(raw["target"]),
                    str(raw["type"]),
                    float(raw["weight"]),
                    from_iso(raw["created_at"]),
                )
        return graph
