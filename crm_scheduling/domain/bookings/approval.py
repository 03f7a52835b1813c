"""
Approval workflow for bookings created by BD users.

    on_hold ──approve──▶ approved
       │
       └────reject────▶ rejected

``approved`` and ``rejected`` are terminal here. Only MANAGER and ADMIN may
move a booking out of ``on_hold``; the permission check runs before the
state check so a BD user never learns the state of other people's bookings.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...models import ApprovalStatus, Booking, BookingStatus, User, UserRole
from ...shared.validators import utcnow
from .conflicts import ACTIVE_STATUSES
from .exceptions import ForbiddenError, InvalidStateError, NotFoundError
from .repository import BookingRepository

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, frozenset] = {
    ApprovalStatus.ON_HOLD: frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED}),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


class ApprovalStateMachine:
    def __init__(self, db: Session):
        self.db = db
        self.repo = BookingRepository()

    def approve(self, actor: User, booking_id: int) -> Booking:
        """Approve an on-hold booking and confirm the meeting"""
        booking = self._load_for_transition(actor, booking_id, ApprovalStatus.APPROVED)

        try:
            booking.approval_status = ApprovalStatus.APPROVED
            booking.approved_by = actor.id
            booking.approved_at = utcnow()
            if booking.status == BookingStatus.SCHEDULED:
                booking.status = BookingStatus.CONFIRMED

            if booking.lead_id is not None:
                self.repo.add_activity(
                    self.db,
                    booking.lead_id,
                    actor.id,
                    f"Booking approved: {booking.title}",
                    bookingId=booking.id,
                    approvedBy=actor.id,
                )

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"✅ Booking {booking_id} approved by user_id: {actor.id}")
        return self.repo.get_booking_by_id(self.db, booking_id)

    def reject(self, actor: User, booking_id: int, reason: Optional[str] = None) -> Booking:
        """Reject an on-hold booking, freeing its slot"""
        booking = self._load_for_transition(actor, booking_id, ApprovalStatus.REJECTED)

        try:
            booking.approval_status = ApprovalStatus.REJECTED
            booking.approved_by = actor.id
            booking.approved_at = utcnow()
            if booking.status in ACTIVE_STATUSES:
                booking.status = BookingStatus.CANCELLED

            # Reassign so the JSON column is flagged as modified
            metadata = dict(booking.metadata_ or {})
            metadata["rejectedBy"] = actor.id
            if reason:
                metadata["rejectionReason"] = reason
            booking.metadata_ = metadata

            if booking.lead_id is not None:
                note = f"Booking rejected: {booking.title}"
                if reason:
                    note = f"{note} - Reason: {reason}"
                self.repo.add_activity(
                    self.db,
                    booking.lead_id,
                    actor.id,
                    note,
                    bookingId=booking.id,
                    rejectedBy=actor.id,
                    reason=reason,
                )

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"🚫 Booking {booking_id} rejected by user_id: {actor.id}")
        return self.repo.get_booking_by_id(self.db, booking_id)

    def _load_for_transition(self, actor: User, booking_id: int, target: str) -> Booking:
        if actor.role not in UserRole.REVIEWERS:
            logger.warning(
                f"⚠️ user_id: {actor.id} ({actor.role}) tried to move booking {booking_id} to {target}"
            )
            raise ForbiddenError("Access denied")

        booking = self.repo.get_booking_for_update(self.db, booking_id)
        if not booking:
            raise NotFoundError("Booking not found")

        if not can_transition(booking.approval_status, target):
            current = booking.approval_status
            self.db.rollback()
            raise InvalidStateError(f"Booking is already {current}")

        return booking
