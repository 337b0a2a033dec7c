"""
ppp-alipay 应用入口：FastAPI 应用实例、路由注册和生命周期。
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库、加载配置和证书，配置缺失直接启动失败。"""
    from ppp.config import AlipayConfig
    from ppp.database import init_db
    from ppp.services.alipay import AliPay

    init_db()
    logger.info("数据库初始化完成")

    config = AlipayConfig.from_env()
    app.state.alipay = AliPay.from_config(config)
    logger.info(
        "支付宝客户端已就绪: app_id=%s, 服务商模式=%s",
        config.app_id, "是" if config.service_id else "否",
    )

    yield


app = FastAPI(title="ppp-alipay", description="支付宝支付接入", lifespan=lifespan)

# ── 路由注册 ──────────────────────────────────────────────

from ppp.routes.trade import router as trade_router
from ppp.routes.auth import router as auth_router

app.include_router(trade_router)
app.include_router(auth_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
