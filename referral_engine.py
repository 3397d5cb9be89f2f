from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from loguru import logger

from errors import MalformedRelationshipGraph
from models import ReferralNode, ReferralRelationship

MAX_TREE_DEPTH = 50
MAX_COMMISSION_LEVELS = 5


def register_referral(child_id, parent_id, ref):
    """
    record that `parent_id` referred `child_id`.
    ref: dict mapping child_id -> parent_id

    keeps the graph a forest:
      - a child has at most ONE referrer (never overwritten)
      - linking child -> parent must not close a loop
    """
    if child_id == parent_id:
        raise ValueError(f"User {child_id} cannot refer themselves.")

    if ref.get(child_id) is not None:
        raise ValueError(f"User {child_id} already has a referrer ({ref[child_id]}).")

    # walk up from the parent; reaching the child means a loop
    current = parent_id
    seen = set()
    while current is not None:
        if current == child_id:
            raise ValueError(
                f"Registering {parent_id} as referrer of {child_id} would create a cycle."
            )
        if current in seen:
            raise MalformedRelationshipGraph(f"Existing referral chain above {parent_id} loops at {current}.")
        seen.add(current)
        current = ref.get(current)

    ref[child_id] = parent_id


def get_lineage(user_id, ref, max_levels=MAX_COMMISSION_LEVELS):
    """
    upline of `user_id` as [L1, L2, ...], padded with None to max_levels.
    """
    lineage = []
    current = user_id

    for _ in range(max_levels):
        parent = ref.get(current)
        if parent is None:
            break
        lineage.append(parent)
        current = parent

    lineage.extend([None] * (max_levels - len(lineage)))
    return lineage


# ---------
# tree building
# ---------

def _edge(rel) -> ReferralRelationship:
    if isinstance(rel, ReferralRelationship):
        return rel
    return ReferralRelationship(referrer_id=rel["referrer_id"], referred_id=rel["referred_id"])


def _user_record(user_id, users: Mapping[Any, Dict[str, Any]]) -> Dict[str, Any]:
    return users.get(user_id) or {"id": user_id}


def _children_map(relationships: Iterable) -> Dict[Any, List[Any]]:
    """
    referrer_id -> [referred_id, ...] in one pass.
    a user listed under two referrers keeps only the first one.
    """
    children: Dict[Any, List[Any]] = defaultdict(list)
    seen_referred: Set[Any] = set()
    for rel in relationships:
        edge = _edge(rel)
        if edge.referred_id in seen_referred:
            logger.warning(
                f"User {edge.referred_id} has more than one referrer; ignoring link from {edge.referrer_id}"
            )
            continue
        seen_referred.add(edge.referred_id)
        children[edge.referrer_id].append(edge.referred_id)
    return children


def _attach(
    user_id,
    level: int,
    depth: int,
    children: Mapping[Any, List[Any]],
    users: Mapping[Any, Dict[str, Any]],
    visited: Set[Any],
    strict: bool,
    cut: Optional[List[Tuple[Any, int]]] = None,
) -> ReferralNode:
    visited.add(user_id)
    node = ReferralNode(user=_user_record(user_id, users), level=level)

    for child_id in children.get(user_id, []):
        if child_id in visited:
            _malformed(f"cycle at user {child_id} (referred by {user_id}); subtree dropped", strict)
            continue
        if depth + 1 >= MAX_TREE_DEPTH:
            _malformed(
                f"referral chain below user {user_id} exceeds {MAX_TREE_DEPTH} levels; user {child_id} rooted separately",
                strict,
            )
            if cut is not None:
                cut.append((child_id, level + 1))
            continue
        node.children.append(
            _attach(child_id, level + 1, depth + 1, children, users, visited, strict, cut)
        )

    return node


def _malformed(message: str, strict: bool) -> None:
    if strict:
        raise MalformedRelationshipGraph(message)
    logger.warning(f"Malformed referral graph: {message}")


def build_referral_forest(
    relationships: Iterable,
    users: Optional[Mapping[Any, Dict[str, Any]]] = None,
    strict: bool = False,
) -> List[ReferralNode]:
    """
    admin view: every user without a referrer in scope becomes a root at level 0.

    users: user_id -> user record. users that appear only in `relationships`
    get a bare {"id": ...} record. a referrer id that is not a known user
    (dangling) does not hide its referrals: they are rooted on their own.
    """
    users = users or {}
    relationships = [_edge(r) for r in relationships]
    children = _children_map(relationships)

    referred = {r.referred_id for r in relationships}
    known = set(users) | {r.referred_id for r in relationships}
    if users:
        known |= {r.referrer_id for r in relationships if r.referrer_id in users}
    else:
        known |= {r.referrer_id for r in relationships}

    # dangling referrers: promote their direct referrals to roots
    root_ids = [uid for uid in known if uid not in referred]
    for referrer_id, kids in children.items():
        if referrer_id not in known:
            logger.warning(f"Unknown referrer {referrer_id}; rooting {len(kids)} referral(s) separately")
            root_ids.extend(kids)

    visited: Set[Any] = set()
    forest = [
        _attach(uid, 0, 0, children, users, visited, strict)
        for uid in _stable_order(root_ids)
    ]

    # still unvisited: part of a loop with no entry point, or below a depth cut
    for uid in _stable_order(known - visited):
        if uid in visited:
            continue
        _malformed(f"user {uid} is unreachable from any root (cycle or depth cut); rooted separately", strict)
        forest.append(_attach(uid, 0, 0, children, users, visited, strict))

    return forest


def build_referral_tree(
    root_id,
    relationships: Iterable,
    users: Optional[Mapping[Any, Dict[str, Any]]] = None,
    strict: bool = False,
) -> List[ReferralNode]:
    """
    user view: the root's direct referrals are level 1.
    returns the list of level-1 nodes (the root itself is not included).

    a chain deeper than MAX_TREE_DEPTH is split: the part below the cut is
    appended as an extra top-level node that keeps its real level.
    """
    users = users or {}
    children = _children_map(relationships)
    visited: Set[Any] = {root_id}
    cut: List[Tuple[Any, int]] = []

    nodes = []
    for child_id in children.get(root_id, []):
        if child_id in visited:
            _malformed(f"user {root_id} refers themselves; link ignored", strict)
            continue
        nodes.append(_attach(child_id, 1, 0, children, users, visited, strict, cut))

    while cut:
        child_id, level = cut.pop(0)
        if child_id not in visited:
            nodes.append(_attach(child_id, level, 0, children, users, visited, strict, cut))
    return nodes


def build_tree_from_entries(entries: Iterable[Dict[str, Any]], root_id, strict: bool = False) -> List[ReferralNode]:
    """
    user view from backend rows shaped like {"referrer_id": ..., "referred": {...}}.
    """
    relationships = []
    users: Dict[Any, Dict[str, Any]] = {}
    for entry in entries:
        referred = dict(entry.get("referred") or {})
        referred_id = entry.get("referred_id", referred.get("id"))
        referred.setdefault("id", referred_id)
        if "total_earned" in entry and "total_earned" not in referred:
            referred["total_earned"] = entry["total_earned"]
        users[referred_id] = referred
        relationships.append(
            ReferralRelationship(referrer_id=entry["referrer_id"], referred_id=referred_id)
        )
    return build_referral_tree(root_id, relationships, users, strict=strict)


def _stable_order(ids):
    # ints and strings may mix in admin data; keep output deterministic anyway
    return sorted(ids, key=lambda v: (str(type(v)), v))
