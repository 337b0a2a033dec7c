"""进程配置单元测试。"""

from dataclasses import FrozenInstanceError

import pytest

from ppp.config import REQUIRED_ENV, AlipayConfig, ConfigError


@pytest.fixture
def env(monkeypatch):
    for name in REQUIRED_ENV + ("ALIPAY_SERVICE_ID", "ALIPAY_NOTIFY_URL", "PPP_MAX_TIMEOUT",
                                "PPP_RETRY_INTERVAL", "PPP_POLL_INTERVAL", "PPP_HTTP_TIMEOUT",
                                "PPP_CANCEL_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ALIPAY_APP_ID", "2021000000000001")
    monkeypatch.setenv("ALIPAY_GATEWAY_URL", "https://openapi.alipay.com/gateway.do")
    monkeypatch.setenv("ALIPAY_CERT_PATH", "/etc/ppp/cert")
    return monkeypatch


class TestFromEnv:
    """AlipayConfig.from_env 单元测试。"""

    def test_defaults(self, env):
        config = AlipayConfig.from_env()
        assert config.app_id == "2021000000000001"
        assert config.service_id == ""
        assert config.max_timeout == 1200.0
        assert config.retry_interval == 1.0
        assert config.poll_interval == 3.0
        assert config.http_timeout == 10.0
        assert config.cancel_timeout == 30.0

    def test_overrides(self, env):
        env.setenv("ALIPAY_SERVICE_ID", "2088000000000001")
        env.setenv("PPP_MAX_TIMEOUT", "90")
        env.setenv("PPP_POLL_INTERVAL", "5")
        env.setenv("PPP_CANCEL_TIMEOUT", "15")
        config = AlipayConfig.from_env()
        assert config.service_id == "2088000000000001"
        assert config.max_timeout == 90.0
        assert config.cancel_timeout == 15.0
        assert config.poll_interval == 5.0

    @pytest.mark.parametrize("name", REQUIRED_ENV)
    def test_missing_required(self, env, name):
        env.delenv(name)
        with pytest.raises(ConfigError, match=name):
            AlipayConfig.from_env()

    def test_invalid_number(self, env):
        env.setenv("PPP_POLL_INTERVAL", "three")
        with pytest.raises(ConfigError, match="PPP_POLL_INTERVAL"):
            AlipayConfig.from_env()

    def test_non_positive_timeout(self, env):
        env.setenv("PPP_MAX_TIMEOUT", "0")
        with pytest.raises(ConfigError):
            AlipayConfig.from_env()

    def test_frozen(self, env):
        config = AlipayConfig.from_env()
        with pytest.raises(FrozenInstanceError):
            config.app_id = "other"
