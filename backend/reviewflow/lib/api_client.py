import logging
from typing import Any, Optional

from supabase import Client, create_client

from reviewflow.core.config import AppConfig

logger = logging.getLogger("api_client")


class LazySupabaseClient:
    """
    service_role Supabase 客户端，第一次调用 table() 时才真正创建。

    中文注释:
    - 构建流水线（包括 import main）不要求 SUPABASE_* 环境变量齐全；
    - 缺少 URL/KEY 时在第一次读写文档库时抛出明确错误。
    """

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self._client: Optional[Client] = None

    @property
    def client(self) -> Client:
        if self._client is None:
            if not self.config.supabase_url:
                raise RuntimeError("SUPABASE_URL is required when REVIEWFLOW_STORE=supabase")
            if not self.config.supabase_key:
                raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY is required when REVIEWFLOW_STORE=supabase")
            self._client = create_client(self.config.supabase_url, self.config.supabase_key)
            logger.info("Supabase client created for %s", self.config.supabase_url)
        return self._client

    def table(self, name: str) -> Any:
        return self.client.table(name)


def create_admin_client(config: AppConfig) -> LazySupabaseClient:
    return LazySupabaseClient(config)
