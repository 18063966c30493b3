from __future__ import annotations

from sqlalchemy import CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from mcloud.models.base import Base, TimestampMixin


class Cluster(TimestampMixin, Base):
    __tablename__ = "clusters"
    __table_args__ = (
        CheckConstraint("state IN ('init', 'active', 'degraded')", name="ck_clusters_state"),
        CheckConstraint("singleton = 1", name="ck_clusters_singleton"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(63), unique=True)
    state: Mapped[str] = mapped_column(String(16), default="init")
    advertise_address: Mapped[str] = mapped_column(String(128))
    # Always 1; the unique index makes a second cluster row impossible.
    singleton: Mapped[int] = mapped_column(Integer, default=1, unique=True)
