"""SQLAlchemy database models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Product(Base):
    """Product page to monitor."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    url: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_failure_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    observations: Mapped[list["PriceObservation"]] = relationship(
        "PriceObservation",
        back_populates="product",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class PriceObservation(Base):
    """One recorded price sample. Rows are append-only."""

    __tablename__ = "price_observations"
    __table_args__ = (
        Index("ix_price_observations_product_captured", "product_id", "captured_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    price: Mapped[int] = mapped_column(Integer, nullable=False)  # minor units (cents)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    tier: Mapped[str] = mapped_column(String(16), nullable=False)  # static, rendered, cloud
    method: Mapped[str] = mapped_column(String(16), nullable=False)  # selectors, ai
    captured_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    product: Mapped["Product"] = relationship("Product", back_populates="observations")


class Setting(Base):
    """Key/value application settings (schedule config, last-send marker)."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class DigestRun(Base):
    """Persisted state of one digest run."""

    __tablename__ = "digest_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    trigger: Mapped[str] = mapped_column(String(16), nullable=False)  # manual, scheduled
    triggered_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state: Mapped[str] = mapped_column(String(24), default="pending", nullable=False)
    # Scheduled slot this run was claimed for; unique so a slot is claimed once
    slot_key: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)
    # Marker value observed when the slot was claimed (compare-and-set expectation)
    previous_last_sent_at: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    total_products: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    succeeded_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    report_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    check_jobs: Mapped[list["CheckJob"]] = relationship(
        "CheckJob", back_populates="digest_run"
    )


class CheckJob(Base):
    """Persisted state of one single-product price check (also the run log)."""

    __tablename__ = "check_jobs"
    __table_args__ = (
        Index("ix_check_jobs_digest_status", "digest_run_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    digest_run_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("digest_runs.id", ondelete="CASCADE"), nullable=True
    )
    product_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="queued", nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tier: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    method: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    digest_run: Mapped[Optional["DigestRun"]] = relationship(
        "DigestRun", back_populates="check_jobs"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in ("succeeded", "failed")
