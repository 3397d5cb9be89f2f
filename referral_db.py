from typing import Any, Dict, List

from loguru import logger

from db.db import get_conn
from db.repositories import (
    get_referral_relationships,
    get_user_by_referral_code,
    get_user_referrer_id,
    get_users,
    set_user_referrer_id,
)
from models import ReferralNode
from referral_engine import (
    MAX_TREE_DEPTH,
    build_referral_forest,
    build_referral_tree,
    register_referral,
)


def _upline_map(conn, child_id: int, parent_id: int) -> Dict[int, Any]:
    """
    child -> parent links for the child and the parent's whole upline,
    enough for register_referral to check the forest rules.
    """
    ref: Dict[int, Any] = {child_id: get_user_referrer_id(conn, child_id)}
    current = parent_id
    depth = 0
    while current is not None and current not in ref and depth <= MAX_TREE_DEPTH:
        ref[current] = get_user_referrer_id(conn, current)
        current = ref[current]
        depth += 1
    return ref


def register_referral_db(child_id: int, referral_code: str) -> Dict[str, Any]:
    """
    DB-backed referral registration.

    child_id: user_id of the new user
    referral_code: code of the referrer (e.g. 'REF_A')

    same rules as register_referral: one referrer per user, no cycles.
    """
    with get_conn() as conn:
        try:
            parent_id = get_user_by_referral_code(conn, referral_code)
            register_referral(child_id, parent_id, _upline_map(conn, child_id, parent_id))
            set_user_referrer_id(conn, child_id, parent_id)

            conn.commit()
            logger.info(f"Linked user {child_id} under referrer {parent_id}")
            return {"status": "linked", "child_id": child_id, "parent_id": parent_id}
        except Exception:
            conn.rollback()
            raise


def load_referral_network(root_user_id: int) -> List[ReferralNode]:
    """
    the root user's downline, level 1 = direct referrals.
    """
    with get_conn() as conn:
        relationships = get_referral_relationships(conn)
        users = get_users(conn)
    return build_referral_tree(root_user_id, relationships, users)


def load_referral_forest() -> List[ReferralNode]:
    """
    admin view over every user.
    """
    with get_conn() as conn:
        relationships = get_referral_relationships(conn)
        users = get_users(conn)
    return build_referral_forest(relationships, users)
