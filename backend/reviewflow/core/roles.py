import logging
from typing import Optional

from fastapi import Depends

from reviewflow.core.auth_utils import get_current_user
from reviewflow.core.capabilities import normalize_roles
from reviewflow.core.config import get_admin_emails
from reviewflow.lib.store import USER_PROFILES, DocumentStore
from reviewflow.models.user import Actor
from reviewflow.services.pipeline import get_document_store

logger = logging.getLogger("roles")

DEFAULT_ROLES = ["author"]
ADMIN_ROLES = ["admin", "editor", "reviewer", "author"]


def _is_admin_email(email: Optional[str]) -> bool:
    if not email:
        return False
    return email.strip().lower() in get_admin_emails()


def load_actor(store: DocumentStore, user_id: str, email: Optional[str]) -> Actor:
    """
    读取（或首次创建）user_profiles 记录并转换为 Actor。

    中文注释:
    1) 首次访问时自动创建 user_profiles 记录，默认 roles=['author']。
    2) 若 email 在 ADMIN_EMAILS 中，则自动补齐 admin/editor/reviewer 权限，便于本地/演示测试。
    3) 角色只决定“身份”，能否执行某个流转由 capabilities.authorize 统一判定。
    """
    elevated = _is_admin_email(email)
    existing = store.get(USER_PROFILES, user_id)
    if existing:
        roles = list(existing.get("roles") or DEFAULT_ROLES)
        if elevated:
            merged = list(dict.fromkeys([*ADMIN_ROLES, *roles]))
            if merged != roles:
                store.update(USER_PROFILES, user_id, {"roles": merged})
                logger.info("ADMIN_EMAILS 提权: %s -> %s", user_id, merged)
                roles = merged
        return Actor(id=user_id, email=existing.get("email") or email, roles=sorted(normalize_roles(roles)))

    roles = list(ADMIN_ROLES if elevated else DEFAULT_ROLES)
    store.insert(USER_PROFILES, {"id": user_id, "email": email, "roles": roles})
    return Actor(id=user_id, email=email, roles=roles)


async def get_current_actor(
    current_user: dict = Depends(get_current_user),
    store: DocumentStore = Depends(get_document_store),
) -> Actor:
    """获取当前操作人（含 roles）。"""
    return load_actor(store, current_user["id"], current_user.get("email"))
