"""
Read side of the booking calendar.

Filtering happens in SQL. Proximity sorting, the radius cut and grouping are
done in memory on the filtered rows.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from ...models import ApprovalStatus, Booking, User, UserRole
from ...shared.validators import as_utc
from .exceptions import ForbiddenError, ValidationError
from .repository import BookingRepository
from .schemas import BookingFilters

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

UNKNOWN_POSTAL_CODE = "unknown"
UNLOCATED_CLUSTER = "unlocated"


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres between two (lat, lng) points"""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


@dataclass
class BookingHit:
    booking: Booking
    # km from the reference point; inf when unknown, None when not proximity-sorted
    distance: Optional[float] = None


@dataclass
class BookingListResult:
    hits: list[BookingHit]
    groups: Optional[dict[str, list[BookingHit]]] = field(default=None)

    @property
    def total(self) -> int:
        return len(self.hits)


def group_key(booking: Booking, group_by: str) -> str:
    if group_by == "date":
        return as_utc(booking.start_time).date().isoformat()
    return booking.postal_code or UNKNOWN_POSTAL_CODE


def cluster_hits(hits: list[BookingHit], radius_km: float) -> dict[str, list[BookingHit]]:
    """Greedy dispatch clusters.

    Walking ``hits`` in order, each booking not yet placed seeds
    ``cluster-<n>`` and pulls in every remaining booking within ``radius_km``
    of it. Bookings without coordinates go to ``unlocated``.
    """
    located = [h for h in hits if h.booking.latitude is not None and h.booking.longitude is not None]
    unlocated = [h for h in hits if h.booking.latitude is None or h.booking.longitude is None]

    groups: dict[str, list[BookingHit]] = {}
    while located:
        seed, *rest = located
        members, located = [seed], []
        for other in rest:
            distance = haversine_km(
                seed.booking.latitude,
                seed.booking.longitude,
                other.booking.latitude,
                other.booking.longitude,
            )
            (members if distance <= radius_km else located).append(other)
        groups[f"cluster-{len(groups) + 1}"] = members

    if unlocated:
        groups[UNLOCATED_CLUSTER] = unlocated
    return groups


class BookingQueryEngine:
    def __init__(self, db: Session):
        self.db = db
        self.repo = BookingRepository()

    def list_bookings(self, actor: User, filters: BookingFilters) -> BookingListResult:
        """List bookings visible to ``actor``, optionally proximity-sorted and grouped"""
        proximity = filters.sortBy == "proximity"
        if proximity and (filters.referenceLat is None or filters.referenceLng is None):
            raise ValidationError("Proximity sort requires referenceLat and referenceLng")
        if filters.radiusKm is not None and not proximity:
            raise ValidationError("radiusKm requires sortBy=proximity")
        clustering = filters.groupBy == "cluster"
        if clustering and filters.radiusKm is None:
            raise ValidationError("groupBy=cluster requires sortBy=proximity and radiusKm")

        # Only reviewers can look at other people's calendars
        user_id = filters.userId
        if actor.role not in UserRole.REVIEWERS:
            user_id = actor.id

        bookings = self.repo.list_bookings(
            self.db,
            user_id=user_id,
            lead_id=filters.leadId,
            campaign_id=filters.campaignId,
            start_date=filters.startDate,
            end_date=filters.endDate,
            status=filters.status,
            approval_status=filters.approvalStatus,
            meeting_kind=filters.meetingKind,
        )

        if proximity:
            # When clustering, radiusKm is the cluster size, not a distance cut
            hits = self._sort_by_proximity(
                bookings,
                filters.referenceLat,
                filters.referenceLng,
                None if clustering else filters.radiusKm,
            )
        else:
            hits = [BookingHit(booking=b) for b in bookings]

        result = BookingListResult(hits=hits)
        if clustering:
            result.groups = cluster_hits(hits, filters.radiusKm)
        elif filters.groupBy:
            groups: dict[str, list[BookingHit]] = {}
            for hit in hits:
                groups.setdefault(group_key(hit.booking, filters.groupBy), []).append(hit)
            result.groups = groups

        logger.debug(
            f"📋 Listed {result.total} booking(s) for user_id: {actor.id} "
            f"(sort={filters.sortBy}, groupBy={filters.groupBy})"
        )
        return result

    def _sort_by_proximity(
        self,
        bookings: list[Booking],
        ref_lat: float,
        ref_lng: float,
        radius_km: Optional[float] = None,
    ) -> list[BookingHit]:
        hits = []
        for b in bookings:
            if b.latitude is None or b.longitude is None:
                distance = math.inf
            else:
                distance = haversine_km(ref_lat, ref_lng, b.latitude, b.longitude)
            if radius_km is not None and distance > radius_km:
                continue
            hits.append(BookingHit(booking=b, distance=distance))

        # Stable sort keeps start-time order among equal distances
        hits.sort(key=lambda h: h.distance)
        return hits

    def approval_queue(self, actor: User) -> list[Booking]:
        """On-hold bookings waiting for review, soonest first"""
        if actor.role not in UserRole.REVIEWERS:
            raise ForbiddenError("Access denied")
        return self.repo.list_bookings(self.db, approval_status=ApprovalStatus.ON_HOLD)
