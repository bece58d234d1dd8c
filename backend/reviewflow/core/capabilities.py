from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

from reviewflow.models.manuscript import ManuscriptStatus

# 中文注释：
# - 这里集中定义“角色 -> 状态流转”权限矩阵，所有流转调用点都必须走 authorize()，禁止在路由里散写角色判断。
# - 默认拒绝：矩阵里没有显式列出的 (role, transition) 组合一律 deny。
# - system 为内部伪角色，仅用于查重结论驱动的自动流转，不对应任何真实用户。


class Role(str, Enum):
    AUTHOR = "author"
    REVIEWER = "reviewer"
    EDITOR = "editor"
    ADMIN = "admin"
    SYSTEM = "system"


class Transition(str, Enum):
    SUBMIT = "submit"
    SUBMIT_REVIEW = "submit_review"
    FORCE_PUBLISH = "force_publish"
    FORCE_REJECT = "force_reject"
    RESUBMIT = "resubmit"
    ADVANCE_AFTER_PLAGIARISM = "advance_after_plagiarism"
    FINALIZE = "finalize"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"

    def __bool__(self) -> bool:
        return self is Decision.ALLOW


ROLE_TRANSITIONS: dict[Role, frozenset[Transition]] = {
    Role.AUTHOR: frozenset({Transition.SUBMIT, Transition.RESUBMIT}),
    Role.REVIEWER: frozenset({Transition.SUBMIT_REVIEW}),
    Role.EDITOR: frozenset(
        {Transition.FORCE_PUBLISH, Transition.FORCE_REJECT, Transition.RESUBMIT, Transition.FINALIZE}
    ),
    Role.ADMIN: frozenset(
        {Transition.FORCE_PUBLISH, Transition.FORCE_REJECT, Transition.RESUBMIT, Transition.FINALIZE}
    ),
    Role.SYSTEM: frozenset({Transition.ADVANCE_AFTER_PLAGIARISM, Transition.FINALIZE}),
}

# 仅在特定稿件状态下才允许的流转；未列出的流转与状态无关。
TRANSITION_STATUSES: dict[Transition, frozenset[str]] = {
    Transition.SUBMIT_REVIEW: frozenset({ManuscriptStatus.UNDER_REVIEW.value}),
}


def _coerce(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value or "").strip().lower())
    except ValueError:
        return None


def authorize(role: Role | str, transition: Transition | str, status: Optional[str] = None) -> Decision:
    """
    纯函数授权判定：(角色, 流转[, 稿件状态]) -> allow/deny。

    status 为 None 时只做角色层面的判定；传入时额外校验流转的状态前置条件。
    """
    r = _coerce(Role, role)
    t = _coerce(Transition, transition)
    if r is None or t is None:
        return Decision.DENY
    if t not in ROLE_TRANSITIONS.get(r, frozenset()):
        return Decision.DENY
    if status is not None:
        required = TRANSITION_STATUSES.get(t)
        if required is not None and str(status) not in required:
            return Decision.DENY
    return Decision.ALLOW


def normalize_roles(roles: Iterable[str] | None) -> set[str]:
    """
    将输入角色归一化（小写、去空）。
    """
    out: set[str] = set()
    for raw in roles or []:
        role = str(getattr(raw, "value", raw) or "").strip().lower()
        if not role:
            continue
        out.add(role)
    return out


def authorize_any(roles: Iterable[str] | None, transition: Transition | str, status: Optional[str] = None) -> Decision:
    """角色集合中任意一个角色被允许即放行。"""
    for role in normalize_roles(roles):
        if authorize(role, transition, status):
            return Decision.ALLOW
    return Decision.DENY


def allowed_transitions(roles: Iterable[str] | None, status: Optional[str] = None) -> set[str]:
    """
    返回当前角色可执行的流转集合（用于前端 capability 输出）。
    """
    return {t.value for t in Transition if authorize_any(roles, t, status)}
