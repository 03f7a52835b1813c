from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class UserRole:
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    BD = "BD"
    DEVELOPER = "DEVELOPER"

    ALL = (ADMIN, MANAGER, BD, DEVELOPER)
    # Roles allowed to review other people's bookings
    REVIEWERS = (ADMIN, MANAGER)


class BookingStatus:
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    ALL = (SCHEDULED, CONFIRMED, COMPLETED, CANCELLED, NO_SHOW)


class ApprovalStatus:
    ON_HOLD = "on_hold"
    APPROVED = "approved"
    REJECTED = "rejected"

    ALL = (ON_HOLD, APPROVED, REJECTED)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(String(20), default=UserRole.BD, nullable=False)  # ADMIN, MANAGER, BD, DEVELOPER
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    bookings = relationship("Booking", back_populates="user", foreign_keys="Booking.user_id")


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    leads = relationship("Lead", back_populates="campaign")
    meeting_types = relationship("MeetingType", back_populates="campaign")


class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=True, index=True)
    # Imported contact fields: name, email, phone, company...
    standard_data = Column(JSON, default=dict, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    campaign = relationship("Campaign", back_populates="leads")
    bookings = relationship("Booking", back_populates="lead")


class MeetingType(Base):
    __tablename__ = "meeting_types"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    icon = Column(String(50), nullable=True)
    color = Column(String(7), nullable=True)  # e.g., #RRGGBB
    duration = Column(Integer, nullable=True)  # minutes
    is_physical = Column(Boolean, default=False, nullable=False)

    campaign = relationship("Campaign", back_populates="meeting_types")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_bookings_time_order"),
        Index("ix_bookings_owner_window", "user_id", "start_time", "end_time"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Ownership and associations
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=True, index=True)
    meeting_type_id = Column(Integer, ForeignKey("meeting_types.id"), nullable=True)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Stored as UTC
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)

    # Meeting lifecycle: scheduled → confirmed → completed | cancelled | no_show
    status = Column(String(20), default=BookingStatus.SCHEDULED, nullable=False, index=True)

    # Approval workflow: on_hold → approved | rejected
    approval_status = Column(
        String(20), default=ApprovalStatus.ON_HOLD, nullable=False, index=True
    )
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)

    # Physical meeting location (geocoded when possible, raw input otherwise)
    address = Column(String(500), nullable=True)
    city = Column(String(255), nullable=True)
    postal_code = Column(String(20), nullable=True, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # Free-text location used when there is no structured address
    location = Column(String(500), nullable=True)

    # Contact overrides
    contact_name = Column(String(255), nullable=True)
    contact_email = Column(String(255), nullable=True)
    contact_phone = Column(String(50), nullable=True)
    online_meeting_email = Column(String(255), nullable=True)

    attendees = Column(JSON, nullable=True)  # [{name, email, responseStatus}]
    reminders = Column(JSON, nullable=True)  # [{method, minutesBefore}]
    metadata_ = Column("metadata", JSON, nullable=True)  # rejectionReason, rejectedBy

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="bookings", foreign_keys=[user_id])
    approver = relationship("User", foreign_keys=[approved_by])
    lead = relationship("Lead", back_populates="bookings")
    meeting_type = relationship("MeetingType")


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    type = Column(String(50), default="NOTE", nullable=False)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
