"""
Domain layer - Pure business logic without external dependencies.
"""

from .availability import AvailabilityCalculator
from .models import (
    Booking,
    BookingPolicy,
    BookingQuery,
    BookingRequest,
    BookingStatus,
    ClientInfo,
    Provider,
    Service,
    ServiceOffering,
    Slot,
    TimeOff,
    TimeRange,
    WeeklyHours,
)

__all__ = [
    "AvailabilityCalculator",
    "Booking",
    "BookingPolicy",
    "BookingQuery",
    "BookingRequest",
    "BookingStatus",
    "ClientInfo",
    "Provider",
    "Service",
    "ServiceOffering",
    "Slot",
    "TimeOff",
    "TimeRange",
    "WeeklyHours",
]
