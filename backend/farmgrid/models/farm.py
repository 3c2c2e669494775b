"""Farm aggregate root.

Plots are kept as an ordered JSON list on the farm row (one document per
farm), mirroring how they are read and written: always as a whole.

Grid shape is stored twice:
  - grid_rows / grid_cols / plot_size  → structured source of truth
  - description                        → human text that also embeds
                                          "Grid: {r}x{c}, PlotSize: {s}"
                                          for legacy readers

`revision` is SQLAlchemy's version counter: every UPDATE is issued as
``... WHERE revision = :loaded`` and bumps it, so a lost update raises
StaleDataError instead of silently overwriting a concurrent save.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from farmgrid.database import Base


class Farm(Base):
    __tablename__ = "farms"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    owner_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    total_size: Mapped[float] = mapped_column(Float, nullable=False)
    # {address, state, district, village, pincode, coordinates: {latitude, longitude}}
    location: Mapped[dict] = mapped_column(JSON, default=dict)
    soil_type: Mapped[str] = mapped_column(String(20), default="loamy")
    irrigation_type: Mapped[str | None] = mapped_column(String(20))
    description: Mapped[str | None] = mapped_column(Text)

    # Structured grid config; null for farms that predate grid tracking
    grid_rows: Mapped[int | None] = mapped_column(Integer)
    grid_cols: Mapped[int | None] = mapped_column(Integer)
    plot_size: Mapped[float | None] = mapped_column(Float)

    plots: Mapped[list] = mapped_column(JSON, default=list)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    owner = relationship("User", back_populates="farms")

    __mapper_args__ = {"version_id_col": revision}
