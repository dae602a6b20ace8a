# Escrow Database Models for FlowPay
# Deals, milestones and the durable records that keep them consistent with
# the payments provider. Import these in addition to database/models.py

from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Text, JSON, Enum, Boolean,
    UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

# Use the same Base from existing models
from database.models import Base, generate_uuid


# ============================================================================
# ENUMS
# ============================================================================

class DealStateDB(str, enum.Enum):
    DRAFT = "DRAFT"
    FUNDED = "FUNDED"
    RELEASED = "RELEASED"
    DISPUTED = "DISPUTED"
    REFUNDED = "REFUNDED"


class MilestoneStateDB(str, enum.Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    RELEASED = "RELEASED"
    DISPUTED = "DISPUTED"


class ApprovalSourceDB(str, enum.Enum):
    REVIEW = "review"
    AUTO_RELEASE = "auto_release"
    FORCE_RELEASE = "force_release"
    DISPUTE_RESOLUTION = "dispute_resolution"


class ReviewOutcomeDB(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISION_REQUESTED = "revision_requested"


class PayoutStatusDB(str, enum.Enum):
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    REVERSED = "REVERSED"


def _enum(enum_cls, name):
    return Enum(enum_cls, values_callable=lambda x: [e.value for e in x], name=name)


# ============================================================================
# DEAL
# ============================================================================

class Deal(Base):
    """One funded engagement between a brand and a creator."""
    __tablename__ = "deals"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    brand_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    creator_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)  # Set on accept
    proposed_creator_id = Column(String(36), ForeignKey("users.id"), nullable=True)

    title = Column(String(255))
    total_amount = Column(Integer, nullable=False)  # In minor units (cents)
    currency = Column(String(3), nullable=False, default="KES")

    state = Column(_enum(DealStateDB, "dealstate"), nullable=False, default=DealStateDB.DRAFT, index=True)

    escrow_ref = Column(String(255), unique=True)  # Written once, at DRAFT -> FUNDED
    funding_ref = Column(String(255), index=True)  # Provider payment awaiting confirmation
    refund_ref = Column(String(255))
    refund_started_at = Column(DateTime)  # Set while a refund is with the provider; releases wait

    auto_release_enabled = Column(Boolean, nullable=False, default=True)
    auto_release_days = Column(Integer, nullable=False, default=5)

    accepted_at = Column(DateTime)
    funded_at = Column(DateTime)
    completed_at = Column(DateTime)
    refunded_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    brand = relationship("User", foreign_keys=[brand_id])
    creator = relationship("User", foreign_keys=[creator_id])
    milestones = relationship(
        "Milestone",
        back_populates="deal",
        cascade="all, delete-orphan",
        order_by="Milestone.position"
    )

    @property
    def released_amount(self) -> int:
        return sum(m.amount for m in self.milestones if m.state == MilestoneStateDB.RELEASED)

    @property
    def unreleased_amount(self) -> int:
        return self.total_amount - self.released_amount


# ============================================================================
# MILESTONE
# ============================================================================

class Milestone(Base):
    """Unit of review and payout inside a deal."""
    __tablename__ = "milestones"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    deal_id = Column(String(36), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    title = Column(String(255), nullable=False)
    description = Column(Text)
    amount = Column(Integer, nullable=False)  # In minor units (cents)
    due_at = Column(DateTime)

    state = Column(_enum(MilestoneStateDB, "milestonestate"), nullable=False, default=MilestoneStateDB.PENDING, index=True)
    approved_via = Column(_enum(ApprovalSourceDB, "approvalsource"))

    payout_ref = Column(String(255))  # Set only at RELEASED
    release_lease_until = Column(DateTime)  # Held while a provider release call is in flight
    last_release_error = Column(Text)

    submitted_at = Column(DateTime)
    approved_at = Column(DateTime)
    released_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    deal = relationship("Deal", back_populates="milestones")
    deliverables = relationship(
        "Deliverable",
        back_populates="milestone",
        cascade="all, delete-orphan",
        order_by="Deliverable.revision.desc()"
    )

    @property
    def latest_deliverable(self):
        return self.deliverables[0] if self.deliverables else None


# ============================================================================
# DELIVERABLE
# ============================================================================

class Deliverable(Base):
    """A creator submission against a milestone. The newest one is authoritative."""
    __tablename__ = "deliverables"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    milestone_id = Column(String(36), ForeignKey("milestones.id", ondelete="CASCADE"), nullable=False, index=True)
    submitted_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    revision = Column(Integer, nullable=False, default=1)  # +1 per resubmission

    content_url = Column(String(500))
    content_hash = Column(String(128))
    description = Column(Text, nullable=False)
    submission_type = Column(String(10), nullable=False, default="url")  # file, url, text
    submission_metadata = Column(JSON)  # file_name, file_size, file_type

    review_outcome = Column(_enum(ReviewOutcomeDB, "reviewoutcome"))
    feedback = Column(Text)
    reviewed_by = Column(String(36), ForeignKey("users.id"))
    reviewed_at = Column(DateTime)

    submitted_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    # Relationships
    milestone = relationship("Milestone", back_populates="deliverables")


# ============================================================================
# SCHEDULED RELEASE JOB
# ============================================================================

class ScheduledRelease(Base):
    """
    Pending auto-release for a submitted milestone.
    The milestone id is the primary key: at most one active job per milestone.
    """
    __tablename__ = "scheduled_release_jobs"

    milestone_id = Column(String(36), ForeignKey("milestones.id", ondelete="CASCADE"), primary_key=True)
    deal_id = Column(String(36), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False, index=True)
    fire_at = Column(DateTime, nullable=False, index=True)
    payload = Column(JSON)

    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=False, index=True)
    locked_until = Column(DateTime)
    last_error = Column(Text)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


# ============================================================================
# PAYOUT
# ============================================================================

class Payout(Base):
    """Provider transfer that moved a milestone's funds to the creator."""
    __tablename__ = "payouts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    deal_id = Column(String(36), ForeignKey("deals.id"), nullable=False, index=True)
    milestone_id = Column(String(36), ForeignKey("milestones.id"), nullable=False, unique=True)

    provider_ref = Column(String(255), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(_enum(PayoutStatusDB, "payoutstatus"), nullable=False, default=PayoutStatusDB.PROCESSING)
    failure_reason = Column(Text)

    paid_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    deal = relationship("Deal")
    milestone = relationship("Milestone")


# ============================================================================
# EXTERNAL EVENT RECORD & EVENT LOG (append-only)
# ============================================================================

class ExternalEvent(Base):
    """A provider webhook event whose effects have been applied."""
    __tablename__ = "external_events"
    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_external_events_provider_event"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    provider = Column(String(30), nullable=False)
    provider_event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(DateTime, nullable=False)


class EventLog(Base):
    """Audit trail of every state transition and external call."""
    __tablename__ = "event_log"
    __table_args__ = (
        Index("ix_event_log_deal_created", "deal_id", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(100), nullable=False, index=True)
    actor_id = Column(String(36))  # user id, or "system"
    deal_id = Column(String(36), index=True)
    milestone_id = Column(String(36), index=True)
    payload = Column(JSON)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
