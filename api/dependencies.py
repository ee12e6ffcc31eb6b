"""
API依赖项 - 结算服务注入与管理端鉴权
"""
import hmac
from typing import Optional

from fastapi import Depends, Header, Request

from core.config import settings
from core.exceptions import AdminAccessDeniedException
from infrastructure.bootstrap import SettlementServices


def get_settlement_services(request: Request) -> SettlementServices:
    """进程级服务实例（由 lifespan 创建，共享结算锁与配置缓存）"""
    return request.app.state.settlement


async def require_admin(x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key")) -> str:
    """校验管理端密钥（常量时间比较）"""
    expected = settings.ADMIN_API_KEY
    if not expected or not x_admin_key:
        raise AdminAccessDeniedException()
    if not hmac.compare_digest(x_admin_key.encode("utf-8"), expected.encode("utf-8")):
        raise AdminAccessDeniedException()
    return "admin"


AdminKey = Depends(require_admin)
