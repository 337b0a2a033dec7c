"""测试共用工具：RSA 密钥、可控时钟和模拟支付宝网关。"""

import base64
import json

from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import pkcs1_15

from ppp.database import get_db
from ppp.models.schemas import ALIPAY
from ppp.services.transport import response_key


def _generate_test_keypair():
    """生成测试用 RSA 2048 密钥对。"""
    key = RSA.generate(2048)
    private_pem = key.export_key("PEM").decode("utf-8")
    public_pem = key.publickey().export_key("PEM").decode("utf-8")
    return private_pem, public_pem


# 应用密钥对（请求签名）和"支付宝"密钥对（响应签名）
APP_PRIVATE_PEM, APP_PUBLIC_PEM = _generate_test_keypair()
ALI_PRIVATE_PEM, ALI_PUBLIC_PEM = _generate_test_keypair()
_ALI_PRIVATE_KEY = RSA.import_key(ALI_PRIVATE_PEM)

TEST_APP_ID = "2021000000000001"
SERVICE_ID = "2088000000000001"
START_TIME = 1_700_000_000.0


class FakeClock:
    """可注入的时钟，sleep 直接推进时间并记录每次等待时长。"""

    def __init__(self, start: float = START_TIME):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeGateway:
    """
    按接口名预置响应的模拟网关。

    预置项可以是响应节点 dict（自动用支付宝私钥签名）、原始响应字符串，
    或异常实例（发送时抛出）。
    """

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock
        self.scripts = {}
        self.defaults = {}
        self.requests = []
        self.sent_at = []
        self.before_send = None

    @staticmethod
    def ok(**fields) -> dict:
        node = {"code": "10000", "msg": "Success"}
        node.update(fields)
        return node

    @staticmethod
    def error(code: str, sub_code: str = "", sub_msg: str = "") -> dict:
        node = {"code": code, "msg": "Business Failed"}
        if sub_code:
            node["sub_code"] = sub_code
            node["sub_msg"] = sub_msg or sub_code
        return node

    @staticmethod
    def body(method: str, node: dict, signed: bool = True) -> str:
        node_text = json.dumps(node, ensure_ascii=False, separators=(",", ":"))
        if not signed:
            return '{"%s":%s}' % (response_key(method), node_text)
        h = SHA256.new(node_text.encode("utf-8"))
        sign = base64.b64encode(pkcs1_15.new(_ALI_PRIVATE_KEY).sign(h)).decode("utf-8")
        return '{"%s":%s,"sign":"%s"}' % (response_key(method), node_text, sign)

    def script(self, method: str, *responses) -> None:
        self.scripts.setdefault(method, []).extend(responses)

    def always(self, method: str, response) -> None:
        self.defaults[method] = response

    def calls(self, method: str) -> list:
        return [r for r in self.requests if r.method == method]

    def send(self, request):
        if self.before_send is not None:
            self.before_send(request)
        self.requests.append(request)
        self.sent_at.append(self.clock.now if self.clock else None)

        queue = self.scripts.get(request.method)
        if queue:
            item = queue.pop(0)
        elif request.method in self.defaults:
            item = self.defaults[request.method]
        else:
            raise AssertionError(f"未预置响应: {request.method}")

        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return item
        return self.body(request.method, item)


def biz_of(request) -> dict:
    """解析请求中的 biz_content。"""
    return json.loads(request.as_dict()["biz_content"])


def count_trades(out_trade_id: str, channel: str = ALIPAY) -> int:
    """直接统计数据库中同一订单号的行数。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT COUNT(*) AS cnt FROM trades WHERE out_trade_id = ? AND channel = ?",
            (out_trade_id, channel),
        ).fetchone()
        return row["cnt"]
    finally:
        db.close()
