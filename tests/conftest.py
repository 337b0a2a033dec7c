"""全局测试配置：测试数据库和常用 fixture。"""

import os
import sqlite3
import tempfile

# 在任何模块导入之前设置测试环境变量
os.environ["TESTING"] = "1"
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="ppp_test_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import pytest

import ppp.database as _db_mod
from ppp.config import AlipayConfig
from ppp.database import init_db
from ppp.services.alipay import AliPay
from ppp.services.signer import Signer
from tests.helpers import (
    ALI_PUBLIC_PEM,
    APP_PRIVATE_PEM,
    SERVICE_ID,
    TEST_APP_ID,
    FakeClock,
    FakeGateway,
)


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS trades;
        DROP TABLE IF EXISTS refunds;
        DROP TABLE IF EXISTS auths;
        DROP TABLE IF EXISTS users;
    """)
    conn.close()
    init_db()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway(clock):
    return FakeGateway(clock)


@pytest.fixture
def config():
    return AlipayConfig(
        app_id=TEST_APP_ID,
        gateway_url="https://openapi.alipay.test/gateway.do",
        cert_path="/nonexistent",
        service_id=SERVICE_ID,
        notify_url="https://merchant.test/notify",
        max_timeout=60.0,
        retry_interval=1.0,
        poll_interval=3.0,
    )


@pytest.fixture
def signer():
    return Signer(APP_PRIVATE_PEM, ALI_PUBLIC_PEM)


@pytest.fixture
def alipay(config, signer, gateway, clock):
    return AliPay(config, signer, transport=gateway, clock=clock, sleeper=clock.sleep)


@pytest.fixture
def cert_dir(tmp_path):
    """写入 PEM 格式证书的临时目录。"""
    (tmp_path / "private.key").write_text(APP_PRIVATE_PEM, encoding="utf-8")
    (tmp_path / "public.key").write_text(ALI_PUBLIC_PEM, encoding="utf-8")
    return tmp_path
