"""Read-only access to sites, their meters and stored meter connections."""

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.models.meter import Meter, MeterConnection
from src.models.site import Site
from src.services.errors import TransientStoreError

logger = logging.getLogger(__name__)


class SiteRepository:
    """Loads the externally maintained site configuration a run works from."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_site(self, site_id: int) -> Site | None:
        try:
            async with self.session_factory() as session:
                return await session.get(Site, site_id)
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Failed to load site {site_id}: {e}") from e

    async def list_meters(self, site_id: int) -> list[Meter]:
        stmt = select(Meter).where(Meter.site_id == site_id).order_by(Meter.sort_order, Meter.id)
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Failed to load meters of site {site_id}: {e}") from e

    async def list_connections(self, site_id: int) -> list[tuple[int, int]]:
        """Stored (parent, child) edges between meters of the site."""
        stmt = (
            select(MeterConnection.parent_meter_id, MeterConnection.child_meter_id)
            .join(Meter, Meter.id == MeterConnection.child_meter_id)
            .where(Meter.site_id == site_id)
            .order_by(MeterConnection.id)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return [(parent_id, child_id) for parent_id, child_id in result.all()]
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Failed to load connections of site {site_id}: {e}") from e


__all__ = ["SiteRepository"]
