"""Site ORM model: a metered installation bound to a supply authority."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models import Base, BaseModel


class Site(Base, BaseModel):
    """Model representing a site whose meters are reconciled together.

    The supply authority selects which tariff book applies when a meter
    references its tariff by name rather than by id.
    """

    __tablename__ = "sites"

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        comment="Site display name",
    )
    supply_authority: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
        comment="Utility / municipality whose tariffs apply to this site",
    )

    meters: Mapped[list["Meter"]] = relationship(  # noqa: F821
        "Meter",
        back_populates="site",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Site(id={self.id}, name={self.name}, supply_authority={self.supply_authority})>"


__all__ = ["Site"]
