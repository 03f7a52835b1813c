"""Booking router - FastAPI endpoints for scheduling and approvals"""

import logging
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import User
from ...services.geocoding import Geocoder, get_geocoder
from .approval import ApprovalStateMachine
from .exceptions import BookingError
from .lifecycle import BookingLifecycleManager
from .query import BookingQueryEngine
from .schemas import (
    BookingCreate,
    BookingFilters,
    BookingResponse,
    BookingUpdate,
    GroupedBookingsResponse,
    RejectRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def get_lifecycle_manager(
    db: Session = Depends(get_db), geocoder: Geocoder = Depends(get_geocoder)
) -> BookingLifecycleManager:
    """Dependency injection for BookingLifecycleManager"""
    return BookingLifecycleManager(db, geocoder)


def get_approval_state_machine(db: Session = Depends(get_db)) -> ApprovalStateMachine:
    return ApprovalStateMachine(db)


def get_query_engine(db: Session = Depends(get_db)) -> BookingQueryEngine:
    return BookingQueryEngine(db)


def get_booking_filters(
    userId: Optional[int] = Query(None),
    leadId: Optional[int] = Query(None),
    campaignId: Optional[int] = Query(None),
    startDate: Optional[datetime] = Query(None),
    endDate: Optional[datetime] = Query(None),
    status: Optional[Literal["scheduled", "confirmed", "completed", "cancelled", "no_show"]] = Query(
        None
    ),
    approvalStatus: Optional[Literal["on_hold", "approved", "rejected"]] = Query(None),
    meetingKind: Optional[Literal["physical", "online"]] = Query(None),
    sortBy: Literal["date", "proximity"] = Query("date"),
    referenceLat: Optional[float] = Query(None, ge=-90, le=90),
    referenceLng: Optional[float] = Query(None, ge=-180, le=180),
    radiusKm: Optional[float] = Query(None, gt=0),
    groupBy: Optional[Literal["date", "postalCode", "cluster"]] = Query(None),
) -> BookingFilters:
    return BookingFilters(
        userId=userId,
        leadId=leadId,
        campaignId=campaignId,
        startDate=startDate,
        endDate=endDate,
        status=status,
        approvalStatus=approvalStatus,
        meetingKind=meetingKind,
        sortBy=sortBy,
        referenceLat=referenceLat,
        referenceLng=referenceLng,
        radiusKm=radiusKm,
        groupBy=groupBy,
    )


# ============================================================================
# BOOKINGS
# ============================================================================


@router.post("", response_model=BookingResponse, status_code=201)
def create_booking(
    data: BookingCreate,
    current_user: User = Depends(get_current_user),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
):
    """Create a booking for the current user"""
    try:
        booking = manager.create_booking(current_user, data)
        return BookingResponse.from_booking(booking)
    except BookingError:
        raise
    except Exception as e:
        logger.error(
            f"❌ create_booking failed for user {current_user.id} "
            f"(leadId={data.leadId}, meetingTypeId={data.meetingTypeId}): {str(e)}"
        )
        logger.exception(e)
        raise HTTPException(status_code=500, detail="Failed to create booking") from e


@router.get("")
def list_bookings(
    filters: BookingFilters = Depends(get_booking_filters),
    current_user: User = Depends(get_current_user),
    engine: BookingQueryEngine = Depends(get_query_engine),
):
    """List bookings; grouped object when ``groupBy`` is set, flat list otherwise"""
    try:
        result = engine.list_bookings(current_user, filters)
    except BookingError:
        raise
    except Exception as e:
        logger.error(f"❌ list_bookings failed for user {current_user.id}: {str(e)}")
        logger.exception(e)
        raise HTTPException(status_code=500, detail="Failed to fetch bookings") from e

    if result.groups is not None:
        return GroupedBookingsResponse(
            groups={
                key: [BookingResponse.from_booking(h.booking, h.distance) for h in hits]
                for key, hits in result.groups.items()
            },
            total=result.total,
        )
    return [BookingResponse.from_booking(h.booking, h.distance) for h in result.hits]


@router.get("/approval-queue", response_model=list[BookingResponse])
def get_approval_queue(
    current_user: User = Depends(get_current_user),
    engine: BookingQueryEngine = Depends(get_query_engine),
):
    """On-hold bookings waiting for a manager"""
    bookings = engine.approval_queue(current_user)
    return [BookingResponse.from_booking(b) for b in bookings]


@router.get("/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: int,
    current_user: User = Depends(get_current_user),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
):
    return BookingResponse.from_booking(manager.get_booking(current_user, booking_id))


@router.put("/{booking_id}", response_model=BookingResponse)
def update_booking(
    booking_id: int,
    data: BookingUpdate,
    current_user: User = Depends(get_current_user),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
):
    """Edit a booking owned by the current user"""
    try:
        booking = manager.update_booking(current_user, booking_id, data)
        return BookingResponse.from_booking(booking)
    except BookingError:
        raise
    except Exception as e:
        logger.error(
            f"❌ update_booking failed for user {current_user.id} (bookingId={booking_id}): {str(e)}"
        )
        logger.exception(e)
        raise HTTPException(status_code=500, detail="Failed to update booking") from e


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: int,
    current_user: User = Depends(get_current_user),
    manager: BookingLifecycleManager = Depends(get_lifecycle_manager),
):
    try:
        booking = manager.cancel_booking(current_user, booking_id)
        return BookingResponse.from_booking(booking)
    except BookingError:
        raise
    except Exception as e:
        logger.error(
            f"❌ cancel_booking failed for user {current_user.id} (bookingId={booking_id}): {str(e)}"
        )
        logger.exception(e)
        raise HTTPException(status_code=500, detail="Failed to cancel booking") from e


# ============================================================================
# APPROVALS
# ============================================================================


@router.post("/{booking_id}/approve", response_model=BookingResponse)
def approve_booking(
    booking_id: int,
    current_user: User = Depends(get_current_user),
    machine: ApprovalStateMachine = Depends(get_approval_state_machine),
):
    """Approve an on-hold booking (MANAGER/ADMIN only)"""
    try:
        booking = machine.approve(current_user, booking_id)
        return BookingResponse.from_booking(booking)
    except BookingError:
        raise
    except Exception as e:
        logger.error(
            f"❌ approve_booking failed for user {current_user.id} (bookingId={booking_id}): {str(e)}"
        )
        logger.exception(e)
        raise HTTPException(status_code=500, detail="Failed to approve booking") from e


@router.post("/{booking_id}/reject", response_model=BookingResponse)
def reject_booking(
    booking_id: int,
    data: Optional[RejectRequest] = Body(None),
    current_user: User = Depends(get_current_user),
    machine: ApprovalStateMachine = Depends(get_approval_state_machine),
):
    """Reject an on-hold booking (MANAGER/ADMIN only), with an optional reason"""
    reason = data.reason if data else None
    try:
        booking = machine.reject(current_user, booking_id, reason)
        return BookingResponse.from_booking(booking)
    except BookingError:
        raise
    except Exception as e:
        logger.error(
            f"❌ reject_booking failed for user {current_user.id} (bookingId={booking_id}): {str(e)}"
        )
        logger.exception(e)
        raise HTTPException(status_code=500, detail="Failed to reject booking") from e
