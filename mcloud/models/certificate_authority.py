from __future__ import annotations

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mcloud.models.base import Base, TimestampMixin


class CertificateAuthority(TimestampMixin, Base):
    __tablename__ = "certificate_authorities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    cluster_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("clusters.id", ondelete="CASCADE"), unique=True
    )
    cert_pem: Mapped[str] = mapped_column(Text)
    key_pem: Mapped[str] = mapped_column(Text)
