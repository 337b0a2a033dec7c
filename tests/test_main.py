"""ppp/main.py 启动配置和路由注册测试。"""

import pytest
from fastapi.testclient import TestClient

from ppp.config import ConfigError
from ppp.main import app
from ppp.services.alipay import AliPay
from tests.helpers import SERVICE_ID, TEST_APP_ID

_ENV = ("ALIPAY_APP_ID", "ALIPAY_GATEWAY_URL", "ALIPAY_CERT_PATH", "ALIPAY_SERVICE_ID", "PPP_MAX_TIMEOUT")


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestHealthEndpoint:
    """健康检查端点测试。"""

    def test_health_returns_ok(self):
        resp = TestClient(app).get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestRouteRegistration:
    """路由注册验证测试。"""

    def test_routes_registered(self):
        paths = {getattr(route, "path", None) for route in app.routes}
        assert {
            "/v1/trade/pay-params",
            "/v1/trade/barpay",
            "/v1/trade/refund",
            "/v1/trade/cancel",
            "/v1/trade/{out_trade_id}",
            "/v1/auth/token",
            "/v1/auth/signed",
            "/v1/auth/users/bind",
            "/v1/auth/users/unbind",
        } <= paths


class TestStartup:
    """启动生命周期测试。"""

    def test_startup_loads_client(self, clean_env, cert_dir):
        clean_env.setenv("ALIPAY_APP_ID", TEST_APP_ID)
        clean_env.setenv("ALIPAY_GATEWAY_URL", "https://openapi.alipay.test/gateway.do")
        clean_env.setenv("ALIPAY_CERT_PATH", str(cert_dir))
        clean_env.setenv("ALIPAY_SERVICE_ID", SERVICE_ID)

        with TestClient(app):
            alipay = app.state.alipay
            assert isinstance(alipay, AliPay)
            assert alipay.config.app_id == TEST_APP_ID
            assert alipay.config.max_timeout == 1200.0

    def test_missing_config_fails_startup(self, clean_env):
        with pytest.raises(ConfigError):
            with TestClient(app):
                pass

    def test_missing_cert_fails_startup(self, clean_env, tmp_path):
        clean_env.setenv("ALIPAY_APP_ID", TEST_APP_ID)
        clean_env.setenv("ALIPAY_GATEWAY_URL", "https://openapi.alipay.test/gateway.do")
        clean_env.setenv("ALIPAY_CERT_PATH", str(tmp_path / "missing"))
        with pytest.raises(ConfigError):
            with TestClient(app):
                pass
