"""
请求调度：发送单个已签名请求，按响应分类执行重试 / 轮询，直到得到确定结果或超时。

状态机：
    ATTEMPTING ──成功/终止/需重新授权──> DONE
        │  网络异常 / 立即重试
        ├──────────> RETRY_WAIT ──> ATTEMPTING
        │  业务处理中
        └──────────> POLLING ──终态──> DONE
    任一状态到达总时限 ──> TIMED_OUT

总时限从逻辑操作开始时计算（RequestContext），内部重试不重置。
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from ppp.models.schemas import Auth, SignedRequest
from ppp.services.classifier import Outcome, ResponseClassifier
from ppp.services.errors import PPPError, TransportTimeout
from ppp.services.transport import ResponseFormatError, TransportError, unwrap_envelope

logger = logging.getLogger(__name__)


class DispatchState(str, Enum):
    ATTEMPTING = "attempting"
    RETRY_WAIT = "retry_wait"
    POLLING = "polling"
    DONE = "done"
    TIMED_OUT = "timed_out"


class RequestContext:
    """
    单次逻辑操作的上下文：起始时间、截止时间、已解析的授权。

    每次对外调用新建一个，内部调用逐层传递，不挂在长期存活的客户端对象上。
    """

    def __init__(self, timeout: float, clock: Callable[[], float] = time.time,
                 auth: Optional[Auth] = None):
        self.clock = clock
        self.timeout = timeout
        self.started_at = clock()
        self.auth = auth

    @property
    def deadline(self) -> float:
        return self.started_at + self.timeout

    def now(self) -> float:
        return self.clock()

    def remaining(self) -> float:
        return self.deadline - self.clock()

    def expired(self) -> bool:
        return self.remaining() <= 0

    def child(self, timeout: Optional[float] = None) -> "RequestContext":
        """
        新起一个时限、沿用同一授权，用于超时后的补偿撤销。

        timeout 为空时沿用父上下文的总时限。
        """
        return RequestContext(timeout or self.timeout, self.clock, auth=self.auth)


@dataclass(frozen=True)
class DispatchResult:
    payload: dict = field(default_factory=dict)
    error: Optional[PPPError] = None
    outcome: Optional[Outcome] = None
    state: DispatchState = DispatchState.DONE

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def timed_out(self) -> bool:
        return self.state is DispatchState.TIMED_OUT

    @classmethod
    def success(cls, payload: dict) -> "DispatchResult":
        return cls(payload=payload, outcome=Outcome.SUCCESS)

    @classmethod
    def failure(cls, error: PPPError, outcome: Optional[Outcome] = Outcome.STOP,
                payload: Optional[dict] = None) -> "DispatchResult":
        return cls(payload=payload or {}, error=error, outcome=outcome)


# poll(ctx) 返回 None 表示仍在处理中，返回 DispatchResult 表示已得到终态
PollFunc = Callable[[RequestContext], Optional[DispatchResult]]


class Dispatcher:
    """请求调度器。无可变状态，可在多个并发操作间共享。"""

    def __init__(self, transport, verifier=None, retry_interval: float = 1.0,
                 poll_interval: float = 3.0, sleeper: Callable[[float], None] = time.sleep):
        self.transport = transport
        self.verifier = verifier
        self.retry_interval = retry_interval
        self.poll_interval = poll_interval
        self._sleep = sleeper

    def _wait(self, ctx: RequestContext, interval: float) -> None:
        # 等待不越过截止时间
        wait = min(interval, ctx.remaining())
        if wait > 0:
            self._sleep(wait)

    def _timeout(self, ctx: RequestContext, request: SignedRequest, attempts: int) -> DispatchResult:
        logger.warning(
            "支付宝请求超时: method=%s, 已耗时%.1f秒, 共请求%d次",
            request.method, ctx.now() - ctx.started_at, attempts,
        )
        return DispatchResult(
            error=TransportTimeout(f"{request.method} 超过 {ctx.timeout:.0f} 秒未完成"),
            state=DispatchState.TIMED_OUT,
        )

    def dispatch(self, request: SignedRequest, ctx: RequestContext,
                 classifier: ResponseClassifier, poll: Optional[PollFunc] = None) -> DispatchResult:
        state = DispatchState.ATTEMPTING
        attempts = 0

        while True:
            if ctx.expired():
                return self._timeout(ctx, request, attempts)

            if state is DispatchState.RETRY_WAIT:
                self._wait(ctx, self.retry_interval)
                state = DispatchState.ATTEMPTING
                continue

            if state is DispatchState.POLLING:
                result = poll(ctx)
                if result is not None:
                    return result
                self._wait(ctx, self.poll_interval)
                continue

            attempts += 1
            try:
                body = self.transport.send(request)
            except TransportError as e:
                logger.info(
                    "支付宝网络异常, %.0f秒后重试: method=%s, attempt=%d, error=%s",
                    self.retry_interval, request.method, attempts, e,
                )
                state = DispatchState.RETRY_WAIT
                continue

            try:
                payload = unwrap_envelope(body, request.method, self.verifier)
            except ResponseFormatError as e:
                logger.error("支付宝响应异常: method=%s, error=%s", request.method, e)
                return DispatchResult.failure(classifier.error_for("", msg=str(e)))

            classification = classifier.classify(payload)
            outcome = classification.outcome

            if outcome is Outcome.SUCCESS:
                return DispatchResult.success(payload)

            if outcome is Outcome.RETRY_IMMEDIATE:
                logger.info(
                    "支付宝服务暂不可用, 原样重试: method=%s, attempt=%d, sub_code=%s",
                    request.method, attempts, classification.error.sub_code,
                )
                state = DispatchState.RETRY_WAIT
                continue

            if outcome is Outcome.RETRY_POLL and poll is not None:
                logger.info("等待用户付款, 开始轮询订单: method=%s", request.method)
                state = DispatchState.POLLING
                continue

            if outcome is Outcome.REAUTH_REQUIRED:
                logger.warning(
                    "支付宝授权失效, 需重新授权: method=%s, sub_code=%s",
                    request.method, classification.error.sub_code,
                )
                return DispatchResult.failure(classification.error, outcome, payload)

            return DispatchResult.failure(classification.error, outcome, payload)
