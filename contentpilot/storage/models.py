"""SQLAlchemy ORM models for users, billing, usage and publishing."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from contentpilot.domain.enums import (
    BillingCycle,
    GenerateStatus,
    PostStatus,
    PricingHistoryStatus,
    Status,
    VideoType,
)
from contentpilot.storage.db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls, name: str) -> Enum:
    # Persist the literal member values, not the Python member names.
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        validate_strings=True,
        values_callable=lambda members: [member.value for member in members],
        length=16,
    )


class PricingPlan(Base):
    __tablename__ = "pricing_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="VND")
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        _enum(BillingCycle, "billing_cycle"),
        nullable=False,
        default=BillingCycle.MONTHLY,
    )
    credit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    features: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[Status] = mapped_column(_enum(Status, "plan_status"), nullable=False, default=Status.ACTIVE)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("name", "billing_cycle", name="uq_pricing_plans_name_cycle"),
        CheckConstraint("price >= 0", name="ck_pricing_plans_price_non_negative"),
        CheckConstraint("credit >= 0 AND capacity >= 0", name="ck_pricing_plans_allowances_non_negative"),
    )


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    status: Mapped[Status] = mapped_column(_enum(Status, "user_status"), nullable=False, default=Status.ACTIVE)
    credit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credit_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    capacity_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reset_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    quota_cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pricing_plan_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("pricing_plans.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint("credit_used >= 0 AND credit_used <= credit", name="ck_users_credit_within_limit"),
        CheckConstraint(
            "capacity_used >= 0 AND capacity_used <= capacity",
            name="ck_users_capacity_within_limit",
        ),
    )


class PricingPlanHistory(Base):
    __tablename__ = "pricing_plan_histories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    plan_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("pricing_plans.id", ondelete="RESTRICT"),
        nullable=False,
    )
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[PricingHistoryStatus] = mapped_column(
        _enum(PricingHistoryStatus, "pricing_history_status"),
        nullable=False,
    )
    error_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expire_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_pricing_plan_histories_user_created_at", "user_id", "created_at"),
        Index("ix_pricing_plan_histories_status_expire_at", "status", "expire_at"),
        Index(
            "uq_pricing_plan_histories_current",
            "user_id",
            unique=True,
            sqlite_where=text("end_date IS NULL AND status = 'SUCCESS'"),
            postgresql_where=text("end_date IS NULL AND status = 'SUCCESS'"),
        ),
    )


class QuotaReservation(Base):
    __tablename__ = "quota_reservations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    dimension: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    quota_cycle: Mapped[int] = mapped_column(Integer, nullable=False)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_quota_reservations_amount_positive"),
        Index("ix_quota_reservations_user_created_at", "user_id", "created_at"),
    )


class GenerateHistory(Base):
    __tablename__ = "generate_histories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    input: Mapped[str] = mapped_column(Text, nullable=False, default="")
    output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    credit: Mapped[int] = mapped_column(Integer, nullable=False)
    # NULL while the reservation is pending settlement.
    status: Mapped[Optional[GenerateStatus]] = mapped_column(
        _enum(GenerateStatus, "generate_status"),
        nullable=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reservation_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("quota_reservations.id", ondelete="SET NULL"),
        nullable=True,
    )
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint("credit > 0", name="ck_generate_histories_credit_positive"),
        Index("ix_generate_histories_user_created_at", "user_id", "created_at"),
    )


class Channel(Base):
    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(128), nullable=False)
    channel_name: Mapped[str] = mapped_column(String(255), nullable=False)
    channel_image: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[Status] = mapped_column(_enum(Status, "channel_status"), nullable=False, default=Status.ACTIVE)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("user_id", "platform", "channel_id", name="uq_channels_user_platform_channel"),
    )


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    channel_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("channels.id", ondelete="SET NULL"),
        nullable=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    video_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    video_type: Mapped[Optional[VideoType]] = mapped_column(_enum(VideoType, "video_type"), nullable=True)
    process_status: Mapped[PostStatus] = mapped_column(
        _enum(PostStatus, "post_status"),
        nullable=False,
        default=PostStatus.DRAFT,
    )
    status: Mapped[Status] = mapped_column(_enum(Status, "post_record_status"), nullable=False, default=Status.ACTIVE)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    likes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_posts_process_status_scheduled_at", "process_status", "scheduled_at"),
        Index("ix_posts_user_created_at", "user_id", "created_at"),
    )


class PostChannelDelivery(Base):
    """One publish target of a post, snapshotted when the post enters processing."""

    __tablename__ = "post_channel_deliveries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    post_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("posts.id", ondelete="CASCADE"),
        nullable=False,
    )
    # Unlinking a channel keeps the delivery row; the sweep records it as failed.
    channel_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("channels.id", ondelete="SET NULL"),
        nullable=True,
    )
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    permanent_failure: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("post_id", "channel_id", name="uq_post_channel_deliveries_post_channel"),
    )


class BillingRenewalAttempt(Base):
    """One charge attempt against a due subscription; `pending` marks the RENEWING window."""

    __tablename__ = "billing_renewal_attempts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    history_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("pricing_plan_histories.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    plan_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("pricing_plans.id", ondelete="RESTRICT"),
        nullable=False,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    error_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("history_id", "attempt_number", name="uq_billing_renewal_attempts_history_attempt"),
        Index("ix_billing_renewal_attempts_user_created_at", "user_id", "created_at"),
    )
