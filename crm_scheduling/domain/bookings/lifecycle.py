"""Booking lifecycle - create, read, edit and cancel bookings"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...database import BookingSlotLock
from ...models import ApprovalStatus, Booking, BookingStatus, User, UserRole
from ...services.geocoding import Geocoder, GeocodingFailure
from ...shared.validators import as_utc, utcnow
from .conflicts import ACTIVE_STATUSES, NON_BLOCKING_APPROVAL, find_conflicts
from .exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from .repository import BookingRepository
from .schemas import BookingCreate, BookingUpdate

logger = logging.getLogger(__name__)

# BookingUpdate field -> Booking column, for plain copies
UPDATABLE_FIELDS = {
    "title": "title",
    "description": "description",
    "location": "location",
    "contactName": "contact_name",
    "contactEmail": "contact_email",
    "contactPhone": "contact_phone",
    "onlineMeetingEmail": "online_meeting_email",
}


def derive_approval(actor: User) -> tuple[str, Optional[int], Optional[datetime]]:
    """Initial (approval_status, approved_by, approved_at) for a booking created by ``actor``"""
    if actor.role == UserRole.BD:
        return ApprovalStatus.ON_HOLD, None, None
    return ApprovalStatus.APPROVED, actor.id, utcnow()


class BookingLifecycleManager:
    """Service layer for booking writes.

    The acting user is always passed in explicitly. Every write that depends
    on the owner's calendar runs inside ``BookingSlotLock`` so the conflict
    check and the insert/update are one transaction.
    """

    def __init__(self, db: Session, geocoder: Geocoder):
        self.db = db
        self.geocoder = geocoder
        self.repo = BookingRepository()

    def create_booking(self, actor: User, data: BookingCreate) -> Booking:
        """Validate, geocode, conflict-check and persist a new booking"""
        logger.info(f"📥 Creating booking for user_id: {actor.id}")

        if not data.title or not data.startTime or not data.endTime:
            raise ValidationError("Title, start time, and end time are required")

        if data.startTime >= data.endTime:
            raise ValidationError("End time must be after start time")

        if data.leadId is not None and not self.repo.get_lead(self.db, data.leadId):
            raise ValidationError(f"Lead {data.leadId} does not exist")

        is_physical = False
        if data.meetingTypeId is not None:
            meeting_type = self.repo.get_meeting_type(self.db, data.meetingTypeId)
            if not meeting_type:
                raise ValidationError(f"Meeting type {data.meetingTypeId} does not exist")
            is_physical = bool(meeting_type.is_physical)

        if is_physical and not data.address:
            raise ValidationError("Address is required for physical meetings")

        location_data = self._resolve_location(data, is_physical)
        approval_status, approved_by, approved_at = derive_approval(actor)

        # Geocoding is done; only storage work happens under the lock
        with BookingSlotLock(self.db, actor.id):
            conflicts = find_conflicts(self.db, actor.id, data.startTime, data.endTime)
            if conflicts:
                raise ConflictError(conflicts)

            booking = self.repo.add_booking(
                self.db,
                user_id=actor.id,
                lead_id=data.leadId,
                meeting_type_id=data.meetingTypeId,
                title=data.title,
                description=data.description,
                start_time=data.startTime,
                end_time=data.endTime,
                location=data.location,
                status=BookingStatus.SCHEDULED,
                approval_status=approval_status,
                approved_by=approved_by,
                approved_at=approved_at,
                contact_name=data.contactName,
                contact_email=data.contactEmail,
                contact_phone=data.contactPhone,
                online_meeting_email=data.onlineMeetingEmail,
                attendees=[a.model_dump(exclude_none=True) for a in data.attendees]
                if data.attendees is not None
                else None,
                reminders=[r.model_dump() for r in data.reminders]
                if data.reminders is not None
                else None,
                **location_data,
            )

            if data.leadId is not None:
                self.repo.add_activity(
                    self.db,
                    data.leadId,
                    actor.id,
                    f"Meeting scheduled: {data.title}",
                    bookingId=booking.id,
                    startTime=data.startTime.isoformat(),
                    approvalStatus=approval_status,
                )

        logger.info(
            f"✅ Booking {booking.id} created for user_id: {actor.id} ({approval_status})"
        )
        return self.repo.get_booking_by_id(self.db, booking.id)

    def _resolve_location(self, data: BookingCreate, is_physical: bool) -> dict:
        """Geocode the meeting address, keeping the raw input when geocoding fails"""
        location = {
            "address": data.address,
            "city": data.city,
            "postal_code": data.postalCode,
            "latitude": None,
            "longitude": None,
        }
        if not (is_physical and data.address):
            return location

        full_address = ", ".join(
            part for part in (data.address, data.postalCode, data.city) if part
        )
        try:
            result = self.geocoder.geocode(full_address)
        except GeocodingFailure as e:
            logger.warning(f"⚠️ Geocoding failed, storing raw address: {e}")
            return location
        except Exception as e:
            logger.warning(f"⚠️ Unexpected geocoding error, storing raw address: {e}")
            return location

        # Normalized provider values win; raw input only fills what the provider left out
        location.update(
            latitude=result.latitude,
            longitude=result.longitude,
            address=(result.address or data.address)[:500],
            city=(result.city or data.city or "")[:255] or None,
            postal_code=(result.postal_code or data.postalCode or "")[:20] or None,
        )
        return location

    def get_booking(self, actor: User, booking_id: int) -> Booking:
        """Get a booking visible to the owner or a reviewer"""
        booking = self.repo.get_booking_by_id(self.db, booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        if booking.user_id != actor.id and actor.role not in UserRole.REVIEWERS:
            raise ForbiddenError("Not allowed to view this booking")
        return booking

    def update_booking(self, actor: User, booking_id: int, data: BookingUpdate) -> Booking:
        """Edit a booking; only its owner may do so"""
        booking = self.repo.get_booking_by_id(self.db, booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        if booking.user_id != actor.id:
            raise ForbiddenError("Only the booking owner can edit it")

        fields = data.model_fields_set
        if "title" in fields and not (data.title or "").strip():
            raise ValidationError("Title cannot be empty")

        with BookingSlotLock(self.db, booking.user_id):
            booking = self.repo.get_booking_for_update(self.db, booking_id)

            start = data.startTime or as_utc(booking.start_time)
            end = data.endTime or as_utc(booking.end_time)
            times_changed = data.startTime is not None or data.endTime is not None
            if times_changed and start >= end:
                raise ValidationError("End time must be after start time")

            old_status = booking.status
            new_status = data.status or old_status

            # Re-check the calendar when the booking will block it in a new way
            will_block = (
                new_status in ACTIVE_STATUSES
                and booking.approval_status != NON_BLOCKING_APPROVAL
            )
            reactivated = old_status not in ACTIVE_STATUSES and new_status in ACTIVE_STATUSES
            if will_block and (times_changed or reactivated):
                conflicts = find_conflicts(
                    self.db, booking.user_id, start, end, exclude_booking_id=booking.id
                )
                if conflicts:
                    raise ConflictError(conflicts)

            for field, column in UPDATABLE_FIELDS.items():
                if field in fields:
                    setattr(booking, column, getattr(data, field))

            if "attendees" in fields:
                booking.attendees = (
                    [a.model_dump(exclude_none=True) for a in data.attendees]
                    if data.attendees is not None
                    else None
                )
            if "reminders" in fields:
                booking.reminders = (
                    [r.model_dump() for r in data.reminders]
                    if data.reminders is not None
                    else None
                )

            booking.start_time = start
            booking.end_time = end
            booking.status = new_status

            if new_status != old_status and booking.lead_id is not None:
                self.repo.add_activity(
                    self.db,
                    booking.lead_id,
                    actor.id,
                    f"Meeting {new_status}: {booking.title}",
                    bookingId=booking.id,
                    oldStatus=old_status,
                    newStatus=new_status,
                )

        logger.info(f"✅ Booking {booking_id} updated by user_id: {actor.id}")
        return self.repo.get_booking_by_id(self.db, booking_id)

    def cancel_booking(self, actor: User, booking_id: int) -> Booking:
        """Cancel a booking (owner or reviewer); rows are never deleted"""
        booking = self.repo.get_booking_by_id(self.db, booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        if booking.user_id != actor.id and actor.role not in UserRole.REVIEWERS:
            raise ForbiddenError("Not allowed to cancel this booking")

        with BookingSlotLock(self.db, booking.user_id):
            booking = self.repo.get_booking_for_update(self.db, booking_id)
            if booking.status == BookingStatus.CANCELLED:
                raise InvalidStateError("Booking is already cancelled")

            old_status = booking.status
            booking.status = BookingStatus.CANCELLED

            if booking.lead_id is not None:
                self.repo.add_activity(
                    self.db,
                    booking.lead_id,
                    actor.id,
                    f"Meeting cancelled: {booking.title}",
                    bookingId=booking.id,
                    oldStatus=old_status,
                    newStatus=BookingStatus.CANCELLED,
                )

        logger.info(f"🗑️ Booking {booking_id} cancelled by user_id: {actor.id}")
        return self.repo.get_booking_by_id(self.db, booking_id)
