"""网关传输层单元测试。"""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from ppp.models.schemas import SignedRequest
from ppp.services.signer import Signer
from ppp.services.transport import (
    HttpTransport,
    ResponseFormatError,
    TransportError,
    response_key,
    unwrap_envelope,
)
from tests.helpers import ALI_PUBLIC_PEM, APP_PRIVATE_PEM, FakeGateway

METHOD = "alipay.trade.query"


def _request():
    return SignedRequest(method=METHOD, params=(("app_id", "2021"), ("method", METHOD), ("sign", "xx")))


def _mock_client(response=None, side_effect=None):
    """构造可用于 with httpx.Client(...) 的 mock。"""
    mock_client = MagicMock()
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = response
    mock_client.__enter__ = MagicMock(return_value=mock_client)
    mock_client.__exit__ = MagicMock(return_value=False)
    return mock_client


class TestResponseKey:

    def test_response_key(self):
        assert response_key("alipay.trade.pay") == "alipay_trade_pay_response"
        assert response_key("alipay.open.auth.token.app") == "alipay_open_auth_token_app_response"


class TestHttpTransport:
    """HttpTransport.send 单元测试。"""

    @patch("ppp.services.transport.httpx.Client")
    def test_posts_form_and_returns_text(self, mock_client_cls):
        mock_resp = MagicMock()
        mock_resp.text = '{"alipay_trade_query_response":{"code":"10000"}}'
        mock_client = _mock_client(mock_resp)
        mock_client_cls.return_value = mock_client

        body = HttpTransport("https://gw.test/gateway.do", timeout=5).send(_request())

        assert body == mock_resp.text
        mock_client_cls.assert_called_once_with(timeout=5)
        args, kwargs = mock_client.post.call_args
        assert args[0] == "https://gw.test/gateway.do"
        assert kwargs["data"]["method"] == METHOD
        mock_resp.raise_for_status.assert_called_once()

    @patch("ppp.services.transport.httpx.Client")
    def test_network_error(self, mock_client_cls):
        mock_client_cls.return_value = _mock_client(side_effect=httpx.ConnectError("连接失败"))
        with pytest.raises(TransportError, match="请求支付宝接口失败"):
            HttpTransport("https://gw.test/gateway.do").send(_request())

    @patch("ppp.services.transport.httpx.Client")
    def test_timeout(self, mock_client_cls):
        mock_client_cls.return_value = _mock_client(side_effect=httpx.ReadTimeout("超时"))
        with pytest.raises(TransportError):
            HttpTransport("https://gw.test/gateway.do").send(_request())

    @patch("ppp.services.transport.httpx.Client")
    def test_http_status_error(self, mock_client_cls):
        mock_resp = MagicMock()
        mock_resp.raise_for_status.side_effect = httpx.HTTPStatusError(
            "502", request=MagicMock(), response=MagicMock(),
        )
        mock_client_cls.return_value = _mock_client(mock_resp)
        with pytest.raises(TransportError):
            HttpTransport("https://gw.test/gateway.do").send(_request())


class TestUnwrapEnvelope:
    """unwrap_envelope 单元测试。"""

    def test_returns_node(self):
        body = FakeGateway.body(METHOD, FakeGateway.ok(trade_no="T1"))
        node = unwrap_envelope(body, METHOD)
        assert node["code"] == "10000"
        assert node["trade_no"] == "T1"

    def test_invalid_json(self):
        with pytest.raises(ResponseFormatError, match="解析支付宝响应失败"):
            unwrap_envelope("<html>502</html>", METHOD)

    def test_missing_key(self):
        body = FakeGateway.body("alipay.trade.pay", FakeGateway.ok())
        with pytest.raises(ResponseFormatError, match="缺少 alipay_trade_query_response"):
            unwrap_envelope(body, METHOD)

    def test_node_not_dict(self):
        with pytest.raises(ResponseFormatError, match="参数格式错误"):
            unwrap_envelope('{"alipay_trade_query_response": "oops"}', METHOD)

    def test_verified_sign(self):
        verifier = Signer(APP_PRIVATE_PEM, ALI_PUBLIC_PEM)
        body = FakeGateway.body(METHOD, FakeGateway.ok(trade_no="T1", subject="中文商品"))
        assert unwrap_envelope(body, METHOD, verifier)["subject"] == "中文商品"

    def test_verifies_raw_text_with_whitespace(self):
        """验签按原文截取，不依赖重新序列化。"""
        verifier = Signer(APP_PRIVATE_PEM, ALI_PUBLIC_PEM)
        body = FakeGateway.body(METHOD, FakeGateway.ok(trade_no="T1"))
        spaced = body.replace('"alipay_trade_query_response":', '"alipay_trade_query_response" : ')
        assert unwrap_envelope(spaced, METHOD, verifier)["trade_no"] == "T1"

    def test_tampered_body(self):
        verifier = Signer(APP_PRIVATE_PEM, ALI_PUBLIC_PEM)
        body = FakeGateway.body(METHOD, FakeGateway.ok(trade_no="T1"))
        with pytest.raises(ResponseFormatError, match="验签失败"):
            unwrap_envelope(body.replace('"T1"', '"T2"'), METHOD, verifier)

    def test_success_without_sign_rejected(self):
        verifier = Signer(APP_PRIVATE_PEM, ALI_PUBLIC_PEM)
        body = FakeGateway.body(METHOD, FakeGateway.ok(), signed=False)
        with pytest.raises(ResponseFormatError, match="缺少签名"):
            unwrap_envelope(body, METHOD, verifier)

    def test_unsigned_error_accepted(self):
        """网关级错误支付宝不签名。"""
        verifier = Signer(APP_PRIVATE_PEM, ALI_PUBLIC_PEM)
        body = FakeGateway.body(METHOD, FakeGateway.error("40002", "isv.missing-signature"), signed=False)
        assert unwrap_envelope(body, METHOD, verifier)["code"] == "40002"

    def test_escaped_node_key_is_format_error(self):
        """节点名使用转义写法时无法按原文截取，按格式错误处理。"""
        verifier = Signer(APP_PRIVATE_PEM, ALI_PUBLIC_PEM)
        body = r'{"alipay_trade_query_response":{"code":"10000"},"sign":"xx"}'
        with pytest.raises(ResponseFormatError, match="节点截取失败"):
            unwrap_envelope(body, METHOD, verifier)
