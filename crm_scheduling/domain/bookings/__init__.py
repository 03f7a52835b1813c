"""
Bookings Domain

Meeting scheduling for BD teams with manager approval.

Structure:
- schemas.py      # Request/response models (camelCase, as the frontend sends them)
- repository.py   # Booking, lead and activity queries
- conflicts.py    # Per-owner time slot conflict detection
- lifecycle.py    # Create, edit and cancel bookings
- approval.py     # on_hold -> approved | rejected
- query.py        # Listing, proximity sort and grouping
- router.py       # /bookings endpoints
"""

from .router import router

__all__ = ["router"]
