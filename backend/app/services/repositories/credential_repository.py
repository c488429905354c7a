from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.delegated_credential import CredentialStatus, DelegatedCredential


class CredentialRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, credential: DelegatedCredential, *, commit: bool = True) -> DelegatedCredential:
        self._session.add(credential)
        if commit:
            await self._session.commit()
        return credential

    async def get(self, credential_id: str) -> DelegatedCredential | None:
        result = await self._session.execute(
            select(DelegatedCredential)
            .where(DelegatedCredential.credential_id == credential_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_automation(self, automation_identity: str) -> DelegatedCredential | None:
        result = await self._session.execute(
            select(DelegatedCredential).where(
                DelegatedCredential.automation_identity == automation_identity
            )
        )
        return result.scalar_one_or_none()

    async def get_active_for_order(self, order_id: str) -> DelegatedCredential | None:
        result = await self._session.execute(
            select(DelegatedCredential)
            .where(DelegatedCredential.order_id == order_id)
            .where(DelegatedCredential.status == CredentialStatus.ACTIVE.value)
            .order_by(DelegatedCredential.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
