"""Booking repository - Database operations for bookings"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session, joinedload

from ...models import ActivityLog, Booking, Lead, MeetingType


class BookingRepository:
    """Repository for booking database operations.

    Write helpers only ``flush``; the caller owns the transaction
    (``BookingSlotLock`` or an explicit commit).
    """

    @staticmethod
    def get_booking_by_id(db: Session, booking_id: int) -> Optional[Booking]:
        """Get a booking with its lead and meeting type"""
        return (
            db.query(Booking)
            .options(joinedload(Booking.lead), joinedload(Booking.meeting_type))
            .filter(Booking.id == booking_id)
            .first()
        )

    @staticmethod
    def get_booking_for_update(db: Session, booking_id: int) -> Optional[Booking]:
        """Get a booking and lock its row until the transaction ends.

        ``populate_existing`` overwrites an instance already in the identity
        map, so the caller sees the locked row rather than an earlier read.
        """
        return (
            db.query(Booking)
            .filter(Booking.id == booking_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def get_lead(db: Session, lead_id: int) -> Optional[Lead]:
        return db.query(Lead).filter(Lead.id == lead_id).first()

    @staticmethod
    def get_meeting_type(db: Session, meeting_type_id: int) -> Optional[MeetingType]:
        return db.query(MeetingType).filter(MeetingType.id == meeting_type_id).first()

    @staticmethod
    def add_booking(db: Session, **booking_data) -> Booking:
        """Stage a new booking and assign its id"""
        booking = Booking(**booking_data)
        db.add(booking)
        db.flush()
        return booking

    @staticmethod
    def add_activity(db: Session, lead_id: int, user_id: int, note: str, **metadata) -> ActivityLog:
        """Stage a NOTE entry on the lead's activity feed"""
        entry = ActivityLog(
            lead_id=lead_id,
            user_id=user_id,
            type="NOTE",
            metadata_={"note": note, **metadata},
        )
        db.add(entry)
        return entry

    @staticmethod
    def list_bookings(
        db: Session,
        user_id: Optional[int] = None,
        lead_id: Optional[int] = None,
        campaign_id: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        status: Optional[str] = None,
        approval_status: Optional[str] = None,
        meeting_kind: Optional[str] = None,
    ) -> list[Booking]:
        """Search bookings, all filters AND-combined, ordered by start time"""
        query = db.query(Booking).options(
            joinedload(Booking.lead), joinedload(Booking.meeting_type)
        )

        if user_id is not None:
            query = query.filter(Booking.user_id == user_id)

        if lead_id is not None:
            query = query.filter(Booking.lead_id == lead_id)

        if campaign_id is not None:
            query = query.join(Lead, Booking.lead_id == Lead.id).filter(
                Lead.campaign_id == campaign_id
            )

        # Either bound may be open
        if start_date:
            query = query.filter(Booking.start_time >= start_date)

        if end_date:
            query = query.filter(Booking.start_time <= end_date)

        if status:
            query = query.filter(Booking.status == status)

        if approval_status:
            query = query.filter(Booking.approval_status == approval_status)

        if meeting_kind == "physical":
            query = query.join(MeetingType, Booking.meeting_type_id == MeetingType.id).filter(
                MeetingType.is_physical.is_(True)
            )
        elif meeting_kind == "online":
            query = query.outerjoin(MeetingType, Booking.meeting_type_id == MeetingType.id).filter(
                (Booking.meeting_type_id.is_(None)) | (MeetingType.is_physical.is_(False))
            )

        return query.order_by(Booking.start_time.asc(), Booking.id.asc()).all()
