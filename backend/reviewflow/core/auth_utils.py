import logging
import os

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

logger = logging.getLogger("auth")

# === Auth 核心配置 ===
# 中文注释:
# 1. 密钥来源于 Supabase Project Settings 中的 JWT Secret（HS256）。
# 2. 我们使用 HTTPBearer 作为验证头。
ALGORITHM = "HS256"
AUDIENCE = "authenticated"

security = HTTPBearer(auto_error=False)


def get_jwt_secret() -> str:
    return os.environ.get("SUPABASE_JWT_SECRET", "mock-secret-replace-later")


def decode_token(token: str) -> dict:
    """
    校验 HS256 JWT，返回 {"id", "email"}；任何校验失败统一 401。
    """
    try:
        header = jwt.get_unverified_header(token)
        if header.get("alg") != ALGORITHM:
            raise HTTPException(status_code=401, detail="不支持的签名算法")
        payload = jwt.decode(token, get_jwt_secret(), algorithms=[ALGORITHM], audience=AUDIENCE)
    except JWTError as e:
        logger.info("JWT 验证失败: %s", e)
        raise HTTPException(status_code=401, detail="Token 验证失败或已过期")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="无效的身份载荷")
    return {"id": str(user_id), "email": payload.get("email")}


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    解码并验证 Supabase JWT Token
    返回解析后的 User Payload
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="缺少认证令牌")
    return decode_token(credentials.credentials)
