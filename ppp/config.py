"""
进程配置：从环境变量（支持 .env 文件）读取支付宝网关接入参数。

必填项缺失属于启动期致命错误，由 AlipayConfig.from_env() 抛出 ConfigError。
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


class ConfigError(Exception):
    """配置缺失或格式错误。"""
    pass


# 必填环境变量
REQUIRED_ENV = ("ALIPAY_APP_ID", "ALIPAY_GATEWAY_URL", "ALIPAY_CERT_PATH")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} 必须是数字: {raw}")


@dataclass(frozen=True)
class AlipayConfig:
    app_id: str
    gateway_url: str
    cert_path: str
    service_id: str = ""      # 服务商模式下的系统商 PID，单商户模式可为空
    notify_url: str = ""      # 异步通知地址
    max_timeout: float = 1200.0    # 单次逻辑操作的总时限（秒）
    retry_interval: float = 1.0    # 网络异常 / 立即重试的等待间隔（秒）
    poll_interval: float = 3.0     # 等待用户付款时的订单查询间隔（秒）
    http_timeout: float = 10.0
    cancel_timeout: float = 30.0   # 超时后补偿撤销的独立时限（秒）

    @classmethod
    def from_env(cls) -> "AlipayConfig":
        """
        读取环境变量构建配置。

        Raises:
            ConfigError: 必填项缺失或数值项格式错误。
        """
        missing = [k for k in REQUIRED_ENV if not os.getenv(k)]
        if missing:
            raise ConfigError(f"缺少必填配置: {', '.join(missing)}")

        config = cls(
            app_id=os.getenv("ALIPAY_APP_ID"),
            gateway_url=os.getenv("ALIPAY_GATEWAY_URL"),
            cert_path=os.getenv("ALIPAY_CERT_PATH"),
            service_id=os.getenv("ALIPAY_SERVICE_ID", ""),
            notify_url=os.getenv("ALIPAY_NOTIFY_URL", ""),
            max_timeout=_float_env("PPP_MAX_TIMEOUT", 1200.0),
            retry_interval=_float_env("PPP_RETRY_INTERVAL", 1.0),
            poll_interval=_float_env("PPP_POLL_INTERVAL", 3.0),
            http_timeout=_float_env("PPP_HTTP_TIMEOUT", 10.0),
            cancel_timeout=_float_env("PPP_CANCEL_TIMEOUT", 30.0),
        )
        if config.max_timeout <= 0:
            raise ConfigError("PPP_MAX_TIMEOUT 必须大于 0")
        return config
