from typing import Optional

from pydantic import BaseModel, Field


class Actor(BaseModel):
    """当前操作人（来自 JWT + user_profiles）"""

    id: str
    email: Optional[str] = None
    roles: list[str] = Field(default_factory=lambda: ["author"])

    def has_role(self, role: str) -> bool:
        return role in {str(r).strip().lower() for r in self.roles}


SYSTEM_ACTOR = Actor(id="system", roles=["system"])
