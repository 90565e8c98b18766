"""
Notification policy stored in the database.
"""
from typing import Optional, List
from sqlalchemy import String, Text, Boolean, Integer
from sqlalchemy.orm import Mapped, mapped_column

from bareprox.models.base import Base


class EmailSettings(Base):
    """Single-row (id=1) outcome notification policy."""

    __tablename__ = "email_settings"

    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    smtp_host: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    smtp_port: Mapped[int] = mapped_column(Integer, default=587, nullable=False)
    security_mode: Mapped[str] = mapped_column(String(20), default="StartTls", nullable=False)
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    password_enc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    from_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    default_recipients: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    on_backup_success: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    on_backup_failure: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    on_restore_success: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    on_restore_failure: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    on_warnings: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    min_severity: Mapped[str] = mapped_column(String(20), default="Info", nullable=False)

    @property
    def recipients(self) -> List[str]:
        return [r.strip() for r in (self.default_recipients or "").split(",") if r.strip()]
