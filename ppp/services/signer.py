"""
RSA2 (SHA256withRSA) 签名与验签。

应用私钥用于请求签名，支付宝公钥用于响应验签。
密钥在启动时从证书目录加载一次：<cert_path>/private.key、<cert_path>/public.key。
"""

import base64
import logging
from pathlib import Path

from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import pkcs1_15

from ppp.config import ConfigError
from ppp.services.errors import SignerError

logger = logging.getLogger(__name__)


def canonicalize(params: dict) -> str:
    """
    待签名字符串：

    1. 过滤空值和 sign 参数
    2. 按参数名 ASCII 排序
    3. 拼接 key=value，以 & 连接（值不 URL 编码）
    """
    filtered = {
        k: v for k, v in params.items()
        if v is not None and v != "" and k != "sign"
    }
    return "&".join(f"{k}={filtered[k]}" for k in sorted(filtered))


def _load_key(key_str: str, kind: str) -> RSA.RsaKey:
    """加载 RSA 密钥，支持 PEM 格式和裸 Base64。"""
    key_str = key_str.strip()
    if not key_str.startswith("-----"):
        key_str = (
            f"-----BEGIN {kind} KEY-----\n"
            + key_str
            + f"\n-----END {kind} KEY-----"
        )
    return RSA.import_key(key_str)


class Signer:
    """请求签名器，持有应用私钥和支付宝公钥。"""

    def __init__(self, private_key: str, public_key: str):
        try:
            self._private_key = _load_key(private_key, "PRIVATE")
        except (ValueError, IndexError) as e:
            raise ConfigError(f"无法加载应用私钥: {e}")
        try:
            self._public_key = _load_key(public_key, "PUBLIC")
        except (ValueError, IndexError) as e:
            raise ConfigError(f"无法加载支付宝公钥: {e}")

    @classmethod
    def from_cert_path(cls, cert_path: str) -> "Signer":
        """从证书目录加载密钥对，文件缺失视为启动期配置错误。"""
        base = Path(cert_path)
        try:
            private_key = (base / "private.key").read_text(encoding="utf-8")
            public_key = (base / "public.key").read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"读取证书失败, cert_path={cert_path}: {e}")
        return cls(private_key, public_key)

    def sign(self, params: dict) -> bytes:
        """对参数做 SHA256withRSA 签名，返回原始签名字节。"""
        message = canonicalize(params)
        try:
            h = SHA256.new(message.encode("utf-8"))
            return pkcs1_15.new(self._private_key).sign(h)
        except (ValueError, TypeError) as e:
            logger.error("请求签名失败: %s", e)
            raise SignerError(f"请求签名失败: {e}")

    def sign_b64(self, params: dict) -> str:
        return base64.b64encode(self.sign(params)).decode("utf-8")

    def verify(self, content: str, sign: str) -> bool:
        """使用支付宝公钥校验响应节点原文的签名。"""
        h = SHA256.new(content.encode("utf-8"))
        try:
            pkcs1_15.new(self._public_key).verify(h, base64.b64decode(sign))
            return True
        except (ValueError, TypeError):
            return False
