from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base

REFERRAL_STATUS_PENDING = "pending"
REFERRAL_STATUS_COMPLETED = "completed"
REFERRAL_STATUS_EXPIRED = "expired"
REFERRAL_STATUSES = (
    REFERRAL_STATUS_PENDING,
    REFERRAL_STATUS_COMPLETED,
    REFERRAL_STATUS_EXPIRED,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UserProfile(Base):
    __tablename__ = "user_profiles"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class ReferralCode(Base):
    __tablename__ = "user_referral_codes"
    __table_args__ = (
        UniqueConstraint("referral_code", name="uq_user_referral_codes_code"),
        CheckConstraint("length(referral_code) = 11", name="ck_user_referral_codes_length"),
        # One active code per user.
        Index(
            "uq_user_referral_codes_active_user",
            "user_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("ix_user_referral_codes_active", "is_active", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=lambda: uuid4().hex)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    referral_code: Mapped[str] = mapped_column(String(11))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Referral(Base):
    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("referred_email", name="uq_referrals_referred_email"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'expired')",
            name="ck_referrals_status",
        ),
        CheckConstraint("expires_at > created_at", name="ck_referrals_expires_future"),
        Index("ix_referrals_status", "status", "created_at"),
        Index("ix_referrals_expires_at", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=lambda: uuid4().hex)
    referrer_id: Mapped[str] = mapped_column(String(36), index=True)
    referred_email: Mapped[str] = mapped_column(String(255))
    referral_code_id: Mapped[str] = mapped_column(String(32), index=True)
    status: Mapped[str] = mapped_column(String(20), default=REFERRAL_STATUS_PENDING)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ReferralReward(Base):
    __tablename__ = "referral_rewards"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_referral_rewards_user"),
        CheckConstraint("completed_referrals >= 0", name="ck_referral_rewards_non_negative"),
        Index("ix_referral_rewards_premium", "premium_granted", "premium_granted_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=lambda: uuid4().hex)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    completed_referrals: Mapped[int] = mapped_column(Integer, default=0)
    premium_granted: Mapped[bool] = mapped_column(Boolean, default=False)
    premium_granted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    premium_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
