"""
委托凭证签发与授权校验

为每个订单生成独立的 Ed25519 密钥对作为自动化身份，私钥加密保存，
所有者的私钥从不进入系统。凭证的授权范围是一组
{target, allowed_operations, value_limit, valid_from, valid_until} 条目，
自动化身份执行的每个操作都必须被其中一条完整覆盖。
"""

import asyncio
import base64
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime

import jwt
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.errors import InvalidCapabilityError, PermissionDeniedError
from app.core.timeutils import to_naive_utc, utcnow
from app.models.delegated_credential import CredentialStatus, DelegatedCredential
from app.models.recurring_order import RecurringOrder
from app.services.actions import (
    KNOWN_OPERATIONS,
    OPERATION_APPROVE,
    OPERATION_SWAP,
    OPERATION_TRANSFER,
    PlannedAction,
)
from app.services.cycle_math import fee_for
from app.services.repositories.credential_repository import CredentialRepository

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"
TOKEN_ISSUER = "dca-automation"


@dataclass
class Capability:
    target: str
    allowed_operations: list[str]
    value_limit: int
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    spent: int = 0

    @property
    def remaining(self) -> int:
        return self.value_limit - self.spent

    def matches(self, action: PlannedAction) -> bool:
        return (
            self.target.lower() == action.target.lower()
            and action.operation in self.allowed_operations
        )

    def is_valid_at(self, now: datetime) -> bool:
        return self.valid_from <= now <= self.valid_until

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "allowed_operations": list(self.allowed_operations),
            "value_limit": str(self.value_limit),
            "valid_from": self.valid_from.isoformat(),
            "valid_until": self.valid_until.isoformat(),
            "spent": str(self.spent),
        }

    def to_claim(self) -> dict:
        claim = self.to_dict()
        claim.pop("spent")
        return claim

    @classmethod
    def from_dict(cls, data: dict) -> "Capability":
        return cls(
            target=data["target"],
            allowed_operations=list(data["allowed_operations"]),
            value_limit=int(data["value_limit"]),
            valid_from=datetime.fromisoformat(data["valid_from"]),
            valid_until=datetime.fromisoformat(data["valid_until"]),
            spent=int(data.get("spent", 0)),
        )


@dataclass
class AutomationSigner:
    """用自动化私钥对操作内容签名"""

    automation_identity: str
    _private_key: Ed25519PrivateKey = field(repr=False)

    def sign(self, payload: dict) -> str:
        message = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
        return self._private_key.sign(message).hex()


def derive_key(secret: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode()))


class CredentialIssuer:
    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._repo = CredentialRepository(session)

    # ------------------------------------------------------------------
    # 签发
    # ------------------------------------------------------------------

    def default_capabilities(self, order: RecurringOrder) -> list[Capability]:
        """定投订单的标准授权：授权卖出资产、在可信路由上兑换、收取手续费"""
        capabilities = [
            Capability(
                target=order.sell_asset,
                allowed_operations=[OPERATION_APPROVE],
                value_limit=order.total_amount,
            )
        ]
        for router in self._settings.trusted_targets:
            capabilities.append(
                Capability(
                    target=router,
                    allowed_operations=[OPERATION_SWAP],
                    value_limit=order.total_amount,
                )
            )

        # 每期手续费向下取整，总和不会超过按总额计算的手续费
        max_fees = fee_for(order.total_amount, order.fee_basis_points)
        if self._settings.fee_recipient and max_fees > 0:
            capabilities.append(
                Capability(
                    target=order.sell_asset,
                    allowed_operations=[OPERATION_TRANSFER],
                    value_limit=max_fees,
                )
            )
        return capabilities

    def validate_capabilities(
        self,
        capabilities: list[Capability],
        order: RecurringOrder,
    ) -> None:
        if not capabilities:
            raise InvalidCapabilityError("授权范围不能为空")

        for capability in capabilities:
            if not capability.target or not capability.target.strip():
                raise InvalidCapabilityError("授权目标不能为空")
            if not capability.allowed_operations:
                raise InvalidCapabilityError(f"授权目标 {capability.target} 没有允许的操作")
            unknown = set(capability.allowed_operations) - KNOWN_OPERATIONS
            if unknown:
                raise InvalidCapabilityError(f"未知的操作: {', '.join(sorted(unknown))}")
            if capability.value_limit <= 0:
                raise InvalidCapabilityError(f"额度必须大于 0: {capability.value_limit}")
            if capability.value_limit > order.total_amount:
                raise InvalidCapabilityError(
                    f"额度 {capability.value_limit} 超过订单总额 {order.total_amount}"
                )
            if capability.valid_from >= capability.valid_until:
                raise InvalidCapabilityError("授权生效时间必须早于失效时间")
            if capability.valid_until > order.expires_at:
                raise InvalidCapabilityError("授权失效时间不能晚于订单到期时间")

    async def issue(
        self,
        owner_identity: str,
        capabilities: list[Capability],
        validity_window: tuple[datetime, datetime],
        *,
        order: RecurringOrder,
        commit: bool = True,
    ) -> DelegatedCredential:
        """
        签发委托凭证

        未单独指定时间窗口的授权条目使用 validity_window。
        新生成的密钥对公钥作为 automation_identity，凭证按此键保存。
        """
        valid_from, valid_until = (to_naive_utc(value) for value in validity_window)
        for capability in capabilities:
            capability.valid_from = to_naive_utc(capability.valid_from or valid_from)
            capability.valid_until = to_naive_utc(capability.valid_until or valid_until)
            capability.spent = 0
        self.validate_capabilities(capabilities, order)

        private_key = Ed25519PrivateKey.generate()
        automation_identity = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        ).hex()

        # PBKDF2 派生密钥较慢，放到线程中执行，避免阻塞事件循环
        encrypted_private_key = await asyncio.to_thread(self._encrypt_private_key, private_key)
        credential_id = uuid.uuid4().hex
        credential = DelegatedCredential(
            credential_id=credential_id,
            owner_identity=owner_identity,
            automation_identity=automation_identity,
            order_id=order.id,
            token=self._sign_token(
                credential_id=credential_id,
                owner_identity=owner_identity,
                automation_identity=automation_identity,
                order_id=order.id,
                capabilities=capabilities,
            ),
            encrypted_private_key=encrypted_private_key,
            status=CredentialStatus.ACTIVE.value,
            created_at=utcnow(),
        )
        credential.capabilities = [c.to_dict() for c in capabilities]
        await self._repo.add(credential, commit=commit)

        logger.info(
            f"已签发委托凭证 {credential_id}: 订单 {order.id}，自动化身份 {automation_identity[:12]}...，"
            f"共 {len(capabilities)} 条授权"
        )
        return credential

    async def reissue(self, order: RecurringOrder, now: datetime | None = None) -> DelegatedCredential:
        """作废订单当前的凭证并按标准授权重新签发"""
        now = now or utcnow()
        current = await self._repo.get_active_for_order(order.id)
        if current is not None:
            self.revoke(current, now)
        return await self.issue(
            order.owner_identity,
            self.default_capabilities(order),
            (now, order.expires_at),
            order=order,
        )

    # ------------------------------------------------------------------
    # 校验
    # ------------------------------------------------------------------

    def load_capabilities(self, credential: DelegatedCredential) -> list[Capability]:
        return [Capability.from_dict(item) for item in credential.capabilities]

    def verify_token(self, credential: DelegatedCredential) -> dict:
        """校验令牌签名，并确认令牌中的授权范围与存储的一致"""
        try:
            claims = jwt.decode(
                credential.token,
                self._settings.credential_signing_secret,
                algorithms=[TOKEN_ALGORITHM],
                issuer=TOKEN_ISSUER,
                # 时间窗口按每条授权单独检查
                options={"verify_exp": False, "verify_nbf": False},
            )
        except jwt.PyJWTError as e:
            raise PermissionDeniedError(f"凭证令牌校验失败: {e}") from None

        if claims.get("sub") != credential.automation_identity:
            raise PermissionDeniedError("凭证令牌与自动化身份不匹配")
        if claims.get("cid") != credential.credential_id:
            raise PermissionDeniedError("凭证令牌与凭证编号不匹配")

        stored = [c.to_claim() for c in self.load_capabilities(credential)]
        if claims.get("caps") != stored:
            raise PermissionDeniedError("凭证令牌与存储的授权范围不一致")
        return claims

    def find_uncovered(
        self,
        credential: DelegatedCredential | None,
        actions: list[PlannedAction],
        now: datetime,
    ) -> list[PlannedAction]:
        """返回未被凭证覆盖的操作（同一批操作累计占用额度）"""
        if credential is None or credential.status != CredentialStatus.ACTIVE.value:
            return list(actions)

        capabilities = self.load_capabilities(credential)
        reserved = [0] * len(capabilities)
        uncovered = []
        for action in actions:
            index = self._match(capabilities, reserved, action, now)
            if index is None:
                uncovered.append(action)
            else:
                reserved[index] += action.value
        return uncovered

    def authorize(
        self,
        credential: DelegatedCredential | None,
        actions: list[PlannedAction],
        now: datetime,
    ) -> None:
        """每个计划操作都必须被凭证覆盖，与报价内容无关"""
        if credential is None:
            raise PermissionDeniedError("订单没有可用的委托凭证")
        if credential.status != CredentialStatus.ACTIVE.value:
            raise PermissionDeniedError(f"委托凭证已失效: {credential.status}")

        self.verify_token(credential)

        uncovered = self.find_uncovered(credential, actions, now)
        if uncovered:
            action = uncovered[0]
            raise PermissionDeniedError(
                f"操作未被授权: {action.operation} @ {action.target}，金额 {action.value}"
            )

    def charge(self, credential: DelegatedCredential, actions: list[PlannedAction]) -> None:
        """
        把已执行操作的金额计入对应授权条目

        操作已经发生，不再检查时间窗口；找不到可计入的条目时只记录警告。
        """
        capabilities = self.load_capabilities(credential)
        reserved = [0] * len(capabilities)
        for action in actions:
            index = self._match(capabilities, reserved, action, None)
            if index is None:
                logger.warning(
                    f"凭证 {credential.credential_id} 无法计入操作 {action.operation} @ {action.target}，金额 {action.value}"
                )
                continue
            reserved[index] += action.value
        for capability, amount in zip(capabilities, reserved):
            capability.spent += amount
        credential.capabilities = [c.to_dict() for c in capabilities]

    @staticmethod
    def _match(
        capabilities: list[Capability],
        reserved: list[int],
        action: PlannedAction,
        now: datetime | None,
    ) -> int | None:
        for index, capability in enumerate(capabilities):
            if not capability.matches(action):
                continue
            if now is not None and not capability.is_valid_at(now):
                continue
            if action.value > capability.remaining - reserved[index]:
                continue
            return index
        return None

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    def void(
        self,
        credential: DelegatedCredential,
        now: datetime | None = None,
        *,
        status: CredentialStatus = CredentialStatus.VOIDED,
    ) -> None:
        """作废凭证（只修改对象，由调用方提交）"""
        if credential.status != CredentialStatus.ACTIVE.value:
            return
        credential.status = status.value
        credential.voided_at = now or utcnow()
        logger.info(f"委托凭证 {credential.credential_id} 已{'撤销' if status == CredentialStatus.REVOKED else '作废'}")

    def revoke(self, credential: DelegatedCredential, now: datetime | None = None) -> None:
        """所有者主动撤销凭证"""
        self.void(credential, now, status=CredentialStatus.REVOKED)

    async def load_signer(self, credential: DelegatedCredential) -> AutomationSigner:
        """在线程中解密自动化私钥（PBKDF2 较慢），每个执行周期只需调用一次"""
        return await asyncio.to_thread(self.signer_for, credential)

    def signer_for(self, credential: DelegatedCredential) -> AutomationSigner:
        try:
            private_key = self._decrypt_private_key(credential.encrypted_private_key)
        except (InvalidToken, ValueError) as e:
            raise PermissionDeniedError(f"无法解密凭证 {credential.credential_id} 的自动化私钥") from e
        return AutomationSigner(credential.automation_identity, private_key)

    # ------------------------------------------------------------------
    # 内部工具
    # ------------------------------------------------------------------

    def _sign_token(
        self,
        *,
        credential_id: str,
        owner_identity: str,
        automation_identity: str,
        order_id: str,
        capabilities: list[Capability],
    ) -> str:
        payload = {
            "iss": TOKEN_ISSUER,
            "sub": automation_identity,
            "cid": credential_id,
            "owner": owner_identity,
            "order": order_id,
            "iat": int(time.time()),
            "caps": [c.to_claim() for c in capabilities],
        }
        return jwt.encode(payload, self._settings.credential_signing_secret, algorithm=TOKEN_ALGORITHM)

    def _encrypt_private_key(self, private_key: Ed25519PrivateKey) -> str:
        raw = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        salt = os.urandom(16)
        fernet = Fernet(self._fernet_key(salt))
        return f"{base64.urlsafe_b64encode(salt).decode()}${fernet.encrypt(raw).decode()}"

    def _decrypt_private_key(self, encrypted: str) -> Ed25519PrivateKey:
        salt_b64, token = encrypted.split("$", 1)
        fernet = Fernet(self._fernet_key(base64.urlsafe_b64decode(salt_b64)))
        return Ed25519PrivateKey.from_private_bytes(fernet.decrypt(token.encode()))

    def _fernet_key(self, salt: bytes) -> bytes:
        return derive_key(
            self._settings.credential_encryption_secret,
            salt,
            self._settings.credential_kdf_iterations,
        )
