"""Booking domain schemas - Pydantic models for validation"""

import math
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ...models import Booking
from ...shared.validators import as_utc, validate_email, validate_phone


class Attendee(BaseModel):
    """Person invited to a meeting besides the owner"""

    name: Optional[str] = Field(None, max_length=255)
    email: str
    responseStatus: Optional[Literal["needsAction", "accepted", "declined", "tentative"]] = None

    @field_validator("email")
    @classmethod
    def validate_attendee_email(cls, v):
        return validate_email(v)


class Reminder(BaseModel):
    method: Literal["email", "popup", "sms"] = "popup"
    minutesBefore: int = Field(..., ge=0, le=40320)  # up to 4 weeks


class BookingCreate(BaseModel):
    """Schema for creating a booking.

    ``title``, ``startTime`` and ``endTime`` are optional here so that the
    lifecycle manager can answer with its own required-fields message.
    """

    title: Optional[str] = Field(None, max_length=255)
    startTime: Optional[datetime] = None
    endTime: Optional[datetime] = None
    leadId: Optional[int] = None
    meetingTypeId: Optional[int] = None
    description: Optional[str] = None
    location: Optional[str] = Field(None, max_length=500)
    attendees: Optional[list[Attendee]] = None
    reminders: Optional[list[Reminder]] = None
    contactName: Optional[str] = Field(None, max_length=255)
    contactEmail: Optional[str] = None
    contactPhone: Optional[str] = None
    onlineMeetingEmail: Optional[str] = None
    address: Optional[str] = Field(None, max_length=500)
    postalCode: Optional[str] = Field(None, max_length=20)
    city: Optional[str] = Field(None, max_length=255)

    @field_validator("startTime", "endTime")
    @classmethod
    def normalize_timestamp(cls, v):
        return as_utc(v)

    @field_validator("contactEmail", "onlineMeetingEmail")
    @classmethod
    def validate_emails(cls, v):
        if v:
            return validate_email(v)
        return v

    @field_validator("contactPhone")
    @classmethod
    def validate_contact_phone(cls, v):
        if v:
            return validate_phone(v)
        return v

    @field_validator("title", "address", "postalCode", "city")
    @classmethod
    def strip_blank(cls, v):
        if v is not None:
            v = v.strip()
            return v or None
        return v


class BookingUpdate(BaseModel):
    """Schema for the owner editing an existing booking"""

    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    location: Optional[str] = Field(None, max_length=500)
    startTime: Optional[datetime] = None
    endTime: Optional[datetime] = None
    status: Optional[
        Literal["scheduled", "confirmed", "completed", "cancelled", "no_show"]
    ] = None
    attendees: Optional[list[Attendee]] = None
    reminders: Optional[list[Reminder]] = None
    contactName: Optional[str] = Field(None, max_length=255)
    contactEmail: Optional[str] = None
    contactPhone: Optional[str] = None
    onlineMeetingEmail: Optional[str] = None

    @field_validator("startTime", "endTime")
    @classmethod
    def normalize_timestamp(cls, v):
        return as_utc(v)

    @field_validator("contactEmail", "onlineMeetingEmail")
    @classmethod
    def validate_emails(cls, v):
        if v:
            return validate_email(v)
        return v

    @field_validator("contactPhone")
    @classmethod
    def validate_contact_phone(cls, v):
        if v:
            return validate_phone(v)
        return v


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class BookingFilters(BaseModel):
    """Query parameters accepted by the booking list"""

    userId: Optional[int] = None
    leadId: Optional[int] = None
    campaignId: Optional[int] = None
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    status: Optional[
        Literal["scheduled", "confirmed", "completed", "cancelled", "no_show"]
    ] = None
    approvalStatus: Optional[Literal["on_hold", "approved", "rejected"]] = None
    meetingKind: Optional[Literal["physical", "online"]] = None
    sortBy: Literal["date", "proximity"] = "date"
    referenceLat: Optional[float] = Field(None, ge=-90, le=90)
    referenceLng: Optional[float] = Field(None, ge=-180, le=180)
    radiusKm: Optional[float] = Field(None, gt=0)
    groupBy: Optional[Literal["date", "postalCode", "cluster"]] = None

    @field_validator("startDate", "endDate")
    @classmethod
    def normalize_timestamp(cls, v):
        return as_utc(v)


class LeadSummary(BaseModel):
    id: int
    campaignId: Optional[int] = None
    standardData: Optional[dict] = None


class MeetingTypeSummary(BaseModel):
    id: int
    name: str
    icon: Optional[str] = None
    color: Optional[str] = None
    isPhysical: bool = False


class BookingResponse(BaseModel):
    """Schema for booking response"""

    id: int
    userId: int
    leadId: Optional[int] = None
    meetingTypeId: Optional[int] = None
    title: str
    description: Optional[str] = None
    startTime: datetime
    endTime: datetime
    status: str
    approvalStatus: str
    approvedBy: Optional[int] = None
    approvedAt: Optional[datetime] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postalCode: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location: Optional[str] = None
    contactName: Optional[str] = None
    contactEmail: Optional[str] = None
    contactPhone: Optional[str] = None
    onlineMeetingEmail: Optional[str] = None
    attendees: Optional[list] = None
    reminders: Optional[list] = None
    metadata: Optional[dict] = None
    createdAt: Optional[datetime] = None
    lead: Optional[LeadSummary] = None
    meetingType: Optional[MeetingTypeSummary] = None
    # Kilometres from the reference point, only set by proximity sorting
    distance: Optional[float] = None

    @classmethod
    def from_booking(cls, b: Booking, distance: Optional[float] = None) -> "BookingResponse":
        lead = None
        if b.lead is not None:
            lead = LeadSummary(
                id=b.lead.id,
                campaignId=b.lead.campaign_id,
                standardData=b.lead.standard_data,
            )
        meeting_type = None
        if b.meeting_type is not None:
            meeting_type = MeetingTypeSummary(
                id=b.meeting_type.id,
                name=b.meeting_type.name,
                icon=b.meeting_type.icon,
                color=b.meeting_type.color,
                isPhysical=bool(b.meeting_type.is_physical),
            )
        if distance is not None and math.isinf(distance):
            # JSON has no Infinity; unknown distance is null
            distance = None

        return cls(
            id=b.id,
            userId=b.user_id,
            leadId=b.lead_id,
            meetingTypeId=b.meeting_type_id,
            title=b.title,
            description=b.description,
            startTime=as_utc(b.start_time),
            endTime=as_utc(b.end_time),
            status=b.status,
            approvalStatus=b.approval_status,
            approvedBy=b.approved_by,
            approvedAt=as_utc(b.approved_at),
            address=b.address,
            city=b.city,
            postalCode=b.postal_code,
            latitude=b.latitude,
            longitude=b.longitude,
            location=b.location,
            contactName=b.contact_name,
            contactEmail=b.contact_email,
            contactPhone=b.contact_phone,
            onlineMeetingEmail=b.online_meeting_email,
            attendees=b.attendees,
            reminders=b.reminders,
            metadata=b.metadata_,
            createdAt=as_utc(b.created_at),
            lead=lead,
            meetingType=meeting_type,
            distance=distance,
        )


class GroupedBookingsResponse(BaseModel):
    groups: dict[str, list[BookingResponse]]
    total: int
