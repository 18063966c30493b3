from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from mcloud.models.base import Base, TimestampMixin


class BootstrapToken(TimestampMixin, Base):
    __tablename__ = "bootstrap_tokens"

    token_hash: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_prefix: Mapped[str] = mapped_column(String(32))
    cluster_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("clusters.id", ondelete="CASCADE"), index=True
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    used: Mapped[bool] = mapped_column(Boolean, default=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    used_by_node_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    issued_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
