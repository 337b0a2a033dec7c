"""
授权解析：确定一次调用以哪个商户身份、是否携带 app_auth_token 执行。

- 未传 user_id：单商户模式，使用系统商自身身份，授权恒为成功。
- 传入 user_id：User → 绑定的 mch_id → Auth。
多个用户可绑定同一个 Auth，避免重复授权导致多个 Auth 争抢 token。
解析结果只缓存在当次操作的 RequestContext 上。
"""

import logging

from ppp.models.schemas import ALIPAY, Auth, AuthStatus, User
from ppp.services.dispatcher import RequestContext
from ppp.services.errors import AuthorizationError, ParameterValidationError, UserNotFound
from ppp.services.ledger import DuplicateKeyError, Ledger, generate_id

logger = logging.getLogger(__name__)


class AuthRegistry:

    def __init__(self, ledger: Ledger, service_id: str = ""):
        self.ledger = ledger
        self.service_id = service_id

    def resolve(self, ctx: RequestContext, user_id: str = "", mch_id: str = "") -> Auth:
        """
        解析当次操作的授权，结果写入 ctx.auth。

        Raises:
            AuthorizationError: 用户不存在、未绑定或授权记录不存在。
            ParameterValidationError: 未传 user_id 却指定了系统商以外的 mch_id。
        """
        if ctx.auth is not None:
            return ctx.auth

        if not user_id:
            if mch_id and mch_id != self.service_id:
                raise ParameterValidationError(f"未传 user_id 时 mch_id 只能为系统商: mch_id={mch_id}")
            ctx.auth = Auth(mch_id=self.service_id, status=AuthStatus.SUCCESS)
            return ctx.auth

        user = self.ledger.get_user(user_id)
        if user is None or not user.mch_id:
            raise AuthorizationError(f"用户未绑定授权: user_id={user_id}")
        if mch_id and mch_id != user.mch_id:
            raise AuthorizationError(f"用户绑定的商户不一致: user_id={user_id}, mch_id={mch_id}")
        auth = self.ledger.get_auth(user.mch_id)
        if auth is None:
            raise AuthorizationError(f"授权不存在: mch_id={user.mch_id}")
        ctx.auth = auth
        return auth

    def authorize(self, ctx: RequestContext, user_id: str = "", mch_id: str = "") -> Auth:
        """解析授权并要求状态为成功，否则不允许发起远程调用。"""
        auth = self.resolve(ctx, user_id, mch_id)
        if auth.status != AuthStatus.SUCCESS:
            raise AuthorizationError(f"授权未生效: mch_id={auth.mch_id}, status={int(auth.status)}")
        return auth

    def delegation_params(self, ctx: RequestContext) -> dict:
        """代子商户调用时携带 app_auth_token，单商户模式下不得携带。"""
        if ctx.auth is not None and ctx.auth.mch_id != self.service_id:
            return {"app_auth_token": ctx.auth.token}
        return {}

    # ── token 存取 ────────────────────────────────────────

    def get(self, mch_id: str) -> Auth | None:
        return self.ledger.get_auth(mch_id)

    def store_token(self, mch_id: str, token: str, now: int) -> Auth:
        """
        按支付宝商户 ID 新增或刷新授权 token。

        每次授权 token 都会变化，新的生效，旧的作废，因此直接覆盖。
        """
        auth = self.ledger.get_auth(mch_id)
        if auth is not None:
            auth.token = token
            auth.updated_at = now
            self.ledger.update_auth(auth)
            logger.info("授权 token 已刷新: mch_id=%s", mch_id)
            return auth

        auth = Auth(
            mch_id=mch_id,
            id=generate_id(),
            token=token,
            status=AuthStatus.WAIT_VERIFY,
            channel=ALIPAY,
            created_at=now,
            updated_at=now,
        )
        try:
            self.ledger.save_auth(auth)
        except DuplicateKeyError:
            # 并发授权回调，保留最新 token
            existing = self.ledger.get_auth(mch_id)
            existing.token = token
            existing.updated_at = now
            self.ledger.update_auth(existing)
            return existing
        logger.info("新增授权: mch_id=%s", mch_id)
        return auth

    def mark_signed(self, auth: Auth, status: AuthStatus, account: str, now: int) -> Auth:
        """更新授权状态和账号，并同步到所有绑定该授权的用户。"""
        auth.status = status
        if account:
            auth.account = account
        auth.updated_at = now
        self.ledger.update_auth(auth)
        count = self.ledger.update_users(auth.mch_id, status)
        logger.info(
            "授权签约状态更新: mch_id=%s, status=%d, 同步用户%d个",
            auth.mch_id, int(status), count,
        )
        return auth

    # ── 用户绑定 ──────────────────────────────────────────

    def bind_user(self, user_id: str, mch_id: str) -> User:
        """将用户绑定到已存在的 Auth，用户状态跟随 Auth。"""
        if not user_id or not mch_id:
            raise ParameterValidationError("user_id 和 mch_id 必传")
        auth = self.ledger.get_auth(mch_id)
        if auth is None:
            raise AuthorizationError(f"授权不存在: mch_id={mch_id}")

        user = self.ledger.get_user(user_id)
        if user is not None:
            user.mch_id = auth.mch_id
            user.status = auth.status
            self.ledger.update_user(user)
            return user

        user = User(user_id=user_id, id=generate_id(), mch_id=auth.mch_id, status=auth.status)
        self.ledger.save_user(user)
        return user

    def unbind_user(self, user_id: str) -> User:
        """解除绑定，Auth 本身保持有效。"""
        if not user_id:
            raise ParameterValidationError("user_id 必传")
        user = self.ledger.get_user(user_id)
        if user is None:
            raise UserNotFound(f"用户不存在: user_id={user_id}")
        user.mch_id = ""
        user.status = AuthStatus.WAIT_VERIFY
        self.ledger.update_user(user)
        return user
