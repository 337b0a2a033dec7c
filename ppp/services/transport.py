"""
网关传输层：发送已签名请求，并从响应中取出接口对应的节点。

支付宝响应格式：{"alipay_trade_pay_response": {...}, "sign": "..."}
sign 是对响应节点原文（不重新序列化）的签名，验签时按原文截取。
"""

import json
import logging

import httpx

from ppp.models.schemas import SignedRequest

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """网络层失败，可重试。"""
    pass


class ResponseFormatError(Exception):
    """响应无法解析、缺少接口节点或验签失败，不可重试。"""
    pass


def response_key(method: str) -> str:
    return method.replace(".", "_") + "_response"


class HttpTransport:
    """基于 httpx 的同步传输，每次请求独立连接。"""

    def __init__(self, gateway_url: str, timeout: float = 10.0):
        self.gateway_url = gateway_url
        self.timeout = timeout

    def send(self, request: SignedRequest) -> str:
        """
        POST 表单参数到网关，返回响应原文。

        Raises:
            TransportError: 连接失败、超时或 HTTP 状态异常。
        """
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.gateway_url, data=request.as_dict())
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"请求支付宝接口失败: {e}")
        logger.debug("支付宝返回: method=%s, body=%s", request.method, response.text)
        return response.text


def unwrap_envelope(body: str, method: str, verifier=None) -> dict:
    """
    取出 <method>_response 节点。

    传入 verifier（Signer）时校验响应签名：成功响应必须带签名；
    部分网关级错误（如参数缺失）支付宝不签名，此时跳过校验。

    Raises:
        ResponseFormatError: JSON 解析失败、缺少节点、节点格式错误或验签失败。
    """
    key = response_key(method)
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError) as e:
        raise ResponseFormatError(f"解析支付宝响应失败: {e}")
    if not isinstance(data, dict) or key not in data:
        raise ResponseFormatError(f"支付宝响应缺少 {key} 字段")
    node = data[key]
    if not isinstance(node, dict):
        raise ResponseFormatError(f"支付宝响应中 {key} 参数格式错误")

    if verifier is not None:
        sign = data.get("sign")
        if sign:
            try:
                raw = _raw_node(body, key)
            except (ValueError, IndexError) as e:
                raise ResponseFormatError(f"支付宝响应节点截取失败: {key}: {e}")
            if not verifier.verify(raw, sign):
                raise ResponseFormatError(f"支付宝响应验签失败: {key}")
        elif node.get("code") == "10000":
            raise ResponseFormatError(f"支付宝成功响应缺少签名: {key}")
    return node


def _raw_node(body: str, key: str) -> str:
    """按原文截取节点 JSON 文本。"""
    marker = f'"{key}"'
    start = body.index(marker) + len(marker)
    start = body.index(":", start) + 1
    while body[start] in " \t\r\n":
        start += 1
    _, end = json.JSONDecoder().raw_decode(body, start)
    return body[start:end]
