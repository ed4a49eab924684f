"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.

Every model names its lookup column in ``__key__`` so the record store can
address rows by a single string or integer key.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    ARRAY,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from oneshot.models.api import DemandStatus, UrgencyFlag


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    __key__: str = "id"


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Product(Base):
    """
    ORM model for products table.

    Owned by the content management system. Read here for existence checks only.
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    barcode: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Product(id={self.id}, name={self.name})>"


class DeviceCredit(Base):
    """
    ORM model for device_credits table.

    One row per device identity. credits_used is only ever changed through
    atomic increments issued by the credit reservation service.
    """

    __tablename__ = "device_credits"
    __key__ = "device_id"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    device_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Unlock accounting
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Fraud prevention
    is_banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ban_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    suspicious_activity: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    emails_seen: Mapped[list[str]] = mapped_column(
        ARRAY(String(255)), nullable=False, default=list
    )

    # Account association
    linked_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    first_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_used >= 0", name="ck_device_credits_used_non_negative"),
        Index(
            "idx_device_credits_linked_account",
            "linked_account_id",
            postgresql_where=text("linked_account_id IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<DeviceCredit(device_id={self.device_id}, credits_used={self.credits_used}, "
            f"is_banned={self.is_banned})>"
        )


class UnlockGrant(Base):
    """
    ORM model for unlock_grants table.

    Immutable record of every product unlock. At most one per subject and product.
    """

    __tablename__ = "unlock_grants"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    subject_key: Mapped[str] = mapped_column(String(300), nullable=False)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    grant_type: Mapped[str] = mapped_column(String(20), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    # Funnel context (analytics)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    referral_source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    source_product_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("subject_key", "product_id", name="uq_unlock_grant_subject_product"),
        CheckConstraint(
            "grant_type IN ('free_credit', 'subscription', 'admin_grant')",
            name="ck_unlock_grant_type",
        ),
        Index("idx_unlock_grants_product_device", "product_id", "device_id"),
        Index(
            "idx_unlock_grants_product_account",
            "product_id",
            "account_id",
            postgresql_where=text("account_id IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UnlockGrant(subject={self.subject_key}, product_id={self.product_id}, "
            f"grant_type={self.grant_type})>"
        )


class DemandRecord(Base):
    """
    ORM model for demand_records table.

    One row per untested product (keyed by barcode). Raw counters are
    accumulated atomically; derived fields are recomputed after each signal.
    """

    __tablename__ = "demand_records"
    __key__ = "product_key"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    product_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    product_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    brand: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Raw counters
    weighted_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    search_signals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    possession_signals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    verified_possession_signals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_voters: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_contributors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Funding
    funding_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=1000.0)
    funding_progress_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Pipeline status
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DemandStatus.COLLECTING_VOTES.value
    )
    threshold_reached_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completion_notified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Velocity
    scans_last_24h: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scans_last_7d: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    velocity_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    urgency_flag: Mapped[str] = mapped_column(
        String(10), nullable=False, default=UrgencyFlag.NORMAL.value
    )
    urgency_rank: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("weighted_score >= 0", name="ck_demand_weighted_score_non_negative"),
        CheckConstraint("funding_threshold > 0", name="ck_demand_funding_threshold_positive"),
        CheckConstraint(
            "funding_progress_pct BETWEEN 0 AND 100", name="ck_demand_funding_progress_range"
        ),
        Index("idx_demand_records_status", "status"),
        Index("idx_demand_records_ranking", "urgency_rank", "velocity_score"),
        Index("idx_demand_records_weighted_score", "weighted_score"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<DemandRecord(product_key={self.product_key}, score={self.weighted_score}, "
            f"status={self.status})>"
        )


class DemandStatusChange(Base):
    """
    ORM model for demand_status_changes table.

    Append-only status history for a demand record.
    """

    __tablename__ = "demand_status_changes"

    # Sequential id orders entries that share a timestamp
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    product_key: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("demand_records.product_key", ondelete="CASCADE"),
        nullable=False,
    )
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_demand_status_changes_key_time", "product_key", "changed_at"),
    )


class DemandVoter(Base):
    """ORM model for demand_voters table - distinct voter fingerprints per product."""

    __tablename__ = "demand_voters"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    product_key: Mapped[str] = mapped_column(String(64), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(255), nullable=False)
    # Order of arrival among the product's distinct voters, starting at 1
    voter_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_voted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("product_key", "fingerprint", name="uq_demand_voter"),
        Index("idx_demand_voters_fingerprint", "fingerprint"),
    )


class DemandSignalEvent(Base):
    """
    ORM model for demand_signal_events table.

    Rolling window of signal timestamps used for velocity. Pruned on write.
    """

    __tablename__ = "demand_signal_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    product_key: Mapped[str] = mapped_column(String(64), nullable=False)
    signal_type: Mapped[str] = mapped_column(String(20), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_demand_signal_events_key_time", "product_key", "recorded_at"),
    )


class DemandContributor(Base):
    """ORM model for demand_contributors table - photo bounty ledger."""

    __tablename__ = "demand_contributors"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    product_key: Mapped[str] = mapped_column(String(64), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    submission_id: Mapped[int] = mapped_column(Integer, nullable=False)
    bonus_weight: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    contributed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("product_key", "fingerprint", name="uq_demand_contributor"),
        Index("idx_demand_contributors_fingerprint", "fingerprint"),
    )


class DemandSubscriber(Base):
    """ORM model for demand_subscribers table - notify when testing completes."""

    __tablename__ = "demand_subscribers"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    product_key: Mapped[str] = mapped_column(String(64), nullable=False)
    subscriber_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("product_key", "subscriber_id", name="uq_demand_subscriber"),
    )
