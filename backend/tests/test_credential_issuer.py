import json
from datetime import timedelta

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from app.core.errors import InvalidCapabilityError, PermissionDeniedError
from app.models.delegated_credential import CredentialStatus
from app.models.recurring_order import RecurringOrder
from app.services.actions import PlannedAction
from app.services.credential_issuer import Capability, CredentialIssuer
from app.services.repositories.credential_repository import CredentialRepository

from conftest import FEE_RECIPIENT, OWNER, ROUTER, SELL_ASSET, T0


def _order(**overrides) -> RecurringOrder:
    values = dict(
        id="order-1",
        owner_identity=OWNER,
        sell_asset=SELL_ASSET,
        total_amount=5000,
        fee_basis_points=10,
        expires_at=T0 + timedelta(days=5),
    )
    values.update(overrides)
    return RecurringOrder(**values)


def _swap(value: int, target: str = ROUTER) -> PlannedAction:
    return PlannedAction(target=target, operation="swap", value=value, asset=SELL_ASSET, counterparty=target)


NOW = T0 + timedelta(hours=1)


@pytest.fixture
async def issued(session_maker, settings):
    order = _order()
    async with session_maker() as session:
        issuer = CredentialIssuer(session, settings)
        credential = await issuer.issue(OWNER, issuer.default_capabilities(order), (T0, order.expires_at), order=order)
    return order, credential


class TestIssue:
    async def test_default_capabilities(self, issued, session_maker, settings):
        order, credential = issued
        async with session_maker() as session:
            capabilities = CredentialIssuer(session, settings).load_capabilities(credential)

        by_operation = {tuple(c.allowed_operations): c for c in capabilities}
        assert by_operation[("approve",)].target == SELL_ASSET
        assert by_operation[("swap",)].target == ROUTER
        assert by_operation[("swap",)].value_limit == 5000
        # 手续费额度为按总额计算的手续费
        assert by_operation[("transfer",)].value_limit == 5
        assert all(c.valid_until == order.expires_at for c in capabilities)

    async def test_credential_is_persisted_by_automation_identity(self, issued, session_maker):
        _, credential = issued
        async with session_maker() as session:
            stored = await CredentialRepository(session).get_by_automation(credential.automation_identity)

        assert stored.credential_id == credential.credential_id
        assert stored.status == CredentialStatus.ACTIVE.value
        assert stored.owner_identity == OWNER

    async def test_private_key_is_encrypted(self, issued):
        _, credential = issued
        assert "$" in credential.encrypted_private_key
        assert credential.automation_identity not in credential.encrypted_private_key

    async def test_token_claims(self, issued, settings):
        _, credential = issued
        claims = jwt.decode(credential.token, settings.credential_signing_secret, algorithms=["HS256"])

        assert claims["sub"] == credential.automation_identity
        assert claims["owner"] == OWNER
        assert len(claims["caps"]) == 3

    async def test_rejects_empty_capabilities(self, session_maker, settings):
        order = _order()
        async with session_maker() as session:
            with pytest.raises(InvalidCapabilityError):
                await CredentialIssuer(session, settings).issue(OWNER, [], (T0, order.expires_at), order=order)

    @pytest.mark.parametrize(
        "capability",
        [
            Capability(target="", allowed_operations=["swap"], value_limit=10),
            Capability(target=ROUTER, allowed_operations=[], value_limit=10),
            Capability(target=ROUTER, allowed_operations=["mint"], value_limit=10),
            Capability(target=ROUTER, allowed_operations=["swap"], value_limit=0),
            Capability(target=ROUTER, allowed_operations=["swap"], value_limit=5001),
            Capability(
                target=ROUTER,
                allowed_operations=["swap"],
                value_limit=10,
                valid_until=T0 + timedelta(days=6),
            ),
        ],
    )
    async def test_rejects_invalid_capability(self, session_maker, settings, capability):
        order = _order()
        async with session_maker() as session:
            with pytest.raises(InvalidCapabilityError):
                await CredentialIssuer(session, settings).issue(
                    OWNER, [capability], (T0, order.expires_at), order=order
                )

    async def test_no_fee_capability_without_recipient(self, session_maker, settings):
        settings = settings.model_copy(update={"fee_recipient": None})
        async with session_maker() as session:
            capabilities = CredentialIssuer(session, settings).default_capabilities(_order())
        assert all("transfer" not in c.allowed_operations for c in capabilities)


class TestAuthorize:
    async def test_covered_actions_pass(self, issued, session_maker, settings):
        _, credential = issued
        async with session_maker() as session:
            CredentialIssuer(session, settings).authorize(credential, [_swap(1000)], NOW)

    async def test_untrusted_target_is_denied(self, issued, session_maker, settings):
        _, credential = issued
        async with session_maker() as session:
            with pytest.raises(PermissionDeniedError):
                CredentialIssuer(session, settings).authorize(credential, [_swap(10, "0xevil")], NOW)

    async def test_value_above_limit_is_denied(self, issued, session_maker, settings):
        _, credential = issued
        async with session_maker() as session:
            with pytest.raises(PermissionDeniedError):
                CredentialIssuer(session, settings).authorize(credential, [_swap(5001)], NOW)

    async def test_actions_in_one_batch_share_the_limit(self, issued, session_maker, settings):
        _, credential = issued
        async with session_maker() as session:
            issuer = CredentialIssuer(session, settings)
            uncovered = issuer.find_uncovered(credential, [_swap(3000), _swap(3000)], NOW)
        assert len(uncovered) == 1

    async def test_outside_validity_window_is_denied(self, issued, session_maker, settings):
        order, credential = issued
        async with session_maker() as session:
            with pytest.raises(PermissionDeniedError):
                CredentialIssuer(session, settings).authorize(
                    credential, [_swap(10)], order.expires_at + timedelta(seconds=1)
                )

    async def test_spent_value_reduces_remaining(self, issued, session_maker, settings):
        _, credential = issued
        async with session_maker() as session:
            issuer = CredentialIssuer(session, settings)
            issuer.charge(credential, [_swap(4500)])
            issuer.authorize(credential, [_swap(500)], NOW)
            with pytest.raises(PermissionDeniedError):
                issuer.authorize(credential, [_swap(501)], NOW)

    async def test_tampered_capabilities_are_denied(self, issued, session_maker, settings):
        _, credential = issued
        capabilities = credential.capabilities
        for capability in capabilities:
            capability["value_limit"] = str(10**30)
        credential.capabilities_json = json.dumps(capabilities)

        async with session_maker() as session:
            with pytest.raises(PermissionDeniedError):
                CredentialIssuer(session, settings).authorize(credential, [_swap(10)], NOW)

    async def test_voided_credential_is_denied(self, issued, session_maker, settings):
        _, credential = issued
        async with session_maker() as session:
            issuer = CredentialIssuer(session, settings)
            issuer.void(credential, NOW)
            assert credential.status == CredentialStatus.VOIDED.value
            with pytest.raises(PermissionDeniedError):
                issuer.authorize(credential, [_swap(10)], NOW)

    async def test_token_for_other_credential_is_denied(self, issued, session_maker, settings):
        _, credential = issued
        order = _order(id="order-2")
        async with session_maker() as session:
            issuer = CredentialIssuer(session, settings)
            other = await issuer.issue(OWNER, issuer.default_capabilities(order), (T0, order.expires_at), order=order)
            credential.token = other.token
            with pytest.raises(PermissionDeniedError):
                issuer.verify_token(credential)

    async def test_missing_credential_is_denied(self, session_maker, settings):
        async with session_maker() as session:
            with pytest.raises(PermissionDeniedError):
                CredentialIssuer(session, settings).authorize(None, [_swap(10)], NOW)


class TestSigner:
    async def test_signature_verifies_with_automation_identity(self, issued, session_maker, settings):
        _, credential = issued
        async with session_maker() as session:
            signer = CredentialIssuer(session, settings).signer_for(credential)

        payload = {"account": "0xabc", "action": _swap(10).to_payload()}
        signature = bytes.fromhex(signer.sign(payload))
        message = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()

        public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(credential.automation_identity))
        public_key.verify(signature, message)

    async def test_wrong_encryption_secret_cannot_sign(self, issued, session_maker, settings):
        _, credential = issued
        other = settings.model_copy(update={"credential_encryption_secret": "other-secret"})
        async with session_maker() as session:
            with pytest.raises(PermissionDeniedError):
                CredentialIssuer(session, other).signer_for(credential)


class TestReissue:
    async def test_reissue_revokes_previous(self, session_maker, settings, make_order):
        order = await make_order()
        async with session_maker() as session:
            issuer = CredentialIssuer(session, settings)
            new_credential = await issuer.reissue(order, NOW)

        async with session_maker() as session:
            repo = CredentialRepository(session)
            old = await repo.get(order.credential_id)
            active = await repo.get_active_for_order(order.id)

        assert old.status == CredentialStatus.REVOKED.value
        assert active.credential_id == new_credential.credential_id
        assert new_credential.automation_identity != old.automation_identity
