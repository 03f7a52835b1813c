"""Shared validation utilities"""

import re
from datetime import datetime, timezone
from typing import Optional


def validate_email(email: Optional[str]) -> Optional[str]:
    """
    Validate email format.

    Args:
        email: Email address string

    Returns:
        Lowercase email address

    Raises:
        ValueError: If email format is invalid
    """
    if not email:
        return email

    email = email.strip().lower()

    # Basic email validation pattern
    email_pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"

    if not re.match(email_pattern, email):
        raise ValueError("Invalid email format")

    return email


def validate_phone(phone: Optional[str]) -> Optional[str]:
    """
    Validate an international phone number and normalize it.

    Keeps a leading "+" and the digits only. Contact numbers come from lead
    imports in many formats ("06 12 34 56 78", "+33 6 12...").

    Raises:
        ValueError: If the number has fewer than 8 or more than 15 digits
    """
    if not phone:
        return phone

    phone = phone.strip()
    prefix = "+" if phone.startswith("+") else ""
    digits = re.sub(r"\D", "", phone)

    if not 8 <= len(digits) <= 15:
        raise ValueError("Phone number must contain between 8 and 15 digits")

    return f"{prefix}{digits}"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Return ``value`` as an aware UTC datetime.

    Naive values are taken to already be UTC; this is what SQLite hands back
    for ``DateTime(timezone=True)`` columns.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
