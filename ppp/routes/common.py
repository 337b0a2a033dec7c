"""路由公共部分：获取支付客户端、统一的成功 / 失败响应。"""

import logging
from dataclasses import asdict

from fastapi import Request
from fastapi.responses import JSONResponse

from ppp.services.errors import PersistenceError, PPPError

logger = logging.getLogger(__name__)


def get_alipay(request: Request):
    """FastAPI 依赖项：返回启动时创建的 AliPay 实例。"""
    return request.app.state.alipay


def ok_response(**data) -> JSONResponse:
    content = {"code": 1, "msg": "success"}
    for key, value in data.items():
        content[key] = asdict(value) if hasattr(value, "__dataclass_fields__") else value
    return JSONResponse(content=content)


def error_response(e: PPPError) -> JSONResponse:
    if isinstance(e, PersistenceError):
        # 资金可能已经变动，只是本地记录失败，需要人工修复
        logger.error("本地记账失败: code=%s, msg=%s", e.code, e.msg)
    return JSONResponse(content={
        "code": -1,
        "msg": e.msg or e.code,
        "error": e.code,
        "sub_code": e.sub_code,
    })
