"""
Time slot conflict detection.

A booking blocks its owner's calendar while it is active: its meeting status
is scheduled or confirmed and it has not been rejected. Candidate slots are
half-open ``[start, end)`` intervals, so back-to-back meetings do not
conflict.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ...models import ApprovalStatus, Booking, BookingStatus

logger = logging.getLogger(__name__)

# Meeting statuses that occupy the owner's calendar
ACTIVE_STATUSES = (BookingStatus.SCHEDULED, BookingStatus.CONFIRMED)

# Approval state that frees the slot regardless of meeting status
NON_BLOCKING_APPROVAL = ApprovalStatus.REJECTED


def intervals_overlap(
    existing_start: datetime, existing_end: datetime, start: datetime, end: datetime
) -> bool:
    """
    True when the existing booking ``[existing_start, existing_end)`` collides
    with the candidate ``[start, end)``.

    Same three cases as the SQL filter in ``find_conflicts``:
    the candidate starts inside the booking, ends inside it, or covers it.
    """
    starts_inside = existing_start <= start < existing_end
    ends_inside = existing_start < end <= existing_end
    covers = start <= existing_start and end >= existing_end
    return starts_inside or ends_inside or covers


def is_blocking(booking: Booking) -> bool:
    """Whether ``booking`` takes part in conflict detection"""
    return (
        booking.status in ACTIVE_STATUSES
        and booking.approval_status != NON_BLOCKING_APPROVAL
    )


def find_conflicts(
    db: Session,
    user_id: int,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[int] = None,
) -> list[Booking]:
    """
    Active bookings of ``user_id`` overlapping ``[start, end)``.

    Pure read. ``exclude_booking_id`` leaves a booking out of the comparison
    set when it is the one being rescheduled. Run inside ``BookingSlotLock``
    when the result decides a write.
    """
    query = db.query(Booking).filter(
        Booking.user_id == user_id,
        Booking.status.in_(ACTIVE_STATUSES),
        Booking.approval_status != NON_BLOCKING_APPROVAL,
        or_(
            and_(Booking.start_time <= start, Booking.end_time > start),
            and_(Booking.start_time < end, Booking.end_time >= end),
            and_(Booking.start_time >= start, Booking.end_time <= end),
        ),
    )
    if exclude_booking_id is not None:
        query = query.filter(Booking.id != exclude_booking_id)

    conflicts = query.order_by(Booking.start_time).all()
    if conflicts:
        logger.info(
            f"⚠️ {len(conflicts)} conflicting booking(s) for user_id={user_id} "
            f"in [{start.isoformat()}, {end.isoformat()})"
        )
    return conflicts
