"""Location — a fixed station in the repair pipeline.

The set is small and seeded by migration; it is not user-editable.
`category` groups locations for business rules: units whose location is
in the "rma" category are the only ones allowed on pallets.
"""

import enum

from sqlalchemy import Enum as SAEnum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class LocationCategory(str, enum.Enum):
    INTAKE = "intake"
    DEBUG = "debug"
    PENDING = "pending"
    L10 = "l10"
    RMA = "rma"
    SHIPPED = "shipped"


class Location(Base):
    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    category: Mapped[LocationCategory] = mapped_column(
        SAEnum(LocationCategory, native_enum=False, length=20), nullable=False
    )

    @property
    def is_rma(self) -> bool:
        return self.category == LocationCategory.RMA
