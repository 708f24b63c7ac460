import enum
from datetime import datetime
from sqlalchemy import String, Integer, Boolean, DateTime, Enum, ForeignKey, CheckConstraint, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.database import Base


class PermissionLevel(str, enum.Enum):
    VIEW = "VIEW"
    COMMENT = "COMMENT"
    EDIT = "EDIT"
    FULL = "FULL"


class ClientShareCode(Base):
    """
    An issued invitation to a client record.

    Only the argon2 hash of the code is stored. Rows are deactivated,
    never deleted, so they double as an audit trail.
    """
    __tablename__ = "client_share_codes"
    __table_args__ = (
        CheckConstraint("max_uses >= 1", name="ck_share_code_max_uses_positive"),
        CheckConstraint("used_count >= 0 AND used_count <= max_uses", name="ck_share_code_used_count_bounds"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    hashed_code: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    code_fingerprint: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("clients.id", ondelete="CASCADE"), index=True, nullable=False)
    created_by_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    permission: Mapped[PermissionLevel] = mapped_column(Enum(PermissionLevel), default=PermissionLevel.VIEW, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    max_uses: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)

    client: Mapped["Client"] = relationship(back_populates="share_codes")


class SharedClient(Base):
    """Access to a client granted to another user through a redeemed code."""
    __tablename__ = "shared_clients"
    __table_args__ = (
        UniqueConstraint("client_id", "shared_with_user_id", name="uq_shared_client_user"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    client_id: Mapped[int] = mapped_column(Integer, ForeignKey("clients.id", ondelete="CASCADE"), index=True, nullable=False)
    shared_with_user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    shared_by_user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    permission: Mapped[PermissionLevel] = mapped_column(Enum(PermissionLevel), default=PermissionLevel.VIEW, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    client: Mapped["Client"] = relationship(back_populates="shares")
    shared_with_user: Mapped["User"] = relationship(foreign_keys=[shared_with_user_id])
