"""Repository for preview environment records."""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from previewd.errors import ConflictError, NotFoundError, StaleVersionError
from previewd.models.environment import Environment


class EnvironmentRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_by_id(self, env_id: str) -> Environment | None:
        result = await self.session.execute(
            select(Environment).where(Environment.id == str(env_id))
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, env_id: str) -> Environment:
        env = await self.find_by_id(env_id)
        if env is None:
            raise NotFoundError(f"Environment '{env_id}' not found")
        return env

    async def get_by_identity(self, repository: str, pr_number: int) -> Environment | None:
        result = await self.session.execute(
            select(Environment).where(
                Environment.repository == repository,
                Environment.pr_number == pr_number,
            )
        )
        return result.scalar_one_or_none()

    async def list_all(self) -> list[Environment]:
        result = await self.session.execute(
            select(Environment).order_by(Environment.inserted_at)
        )
        return list(result.scalars().all())

    async def list_ids(self) -> list[str]:
        result = await self.session.execute(select(Environment.id))
        return [str(env_id) for env_id in result.scalars().all()]

    async def create(self, **fields) -> Environment:
        env = Environment(**fields)
        self.session.add(env)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise ConflictError(
                f"An environment for {fields.get('repository')} "
                f"PR #{fields.get('pr_number')} already exists"
            ) from exc
        await self.session.refresh(env)
        return env

    async def flush(self) -> None:
        """Flush pending changes; a stale version token becomes StaleVersionError."""
        try:
            await self.session.flush()
        except StaleDataError as exc:
            raise StaleVersionError("Environment was modified concurrently") from exc

    async def delete(self, env: Environment) -> None:
        await self.session.delete(env)
        await self.flush()
