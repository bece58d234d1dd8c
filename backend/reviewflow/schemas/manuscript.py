from typing import Optional

from pydantic import BaseModel, Field


class ManuscriptCreate(BaseModel):
    """作者投稿请求；id 可选（客户端幂等键），不传则由服务端生成"""

    id: Optional[str] = Field(None, min_length=1)
    title: str = ""
    text: str


class ManuscriptResubmit(BaseModel):
    """重新提交：text 为空时沿用已保存的全文（editor/admin 重跑查重）"""

    text: Optional[str] = None
    title: Optional[str] = None


class EditorOverride(BaseModel):
    comment: Optional[str] = Field(None, max_length=2000)
