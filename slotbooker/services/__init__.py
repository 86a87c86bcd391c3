"""
Service layer - Orchestrates domain logic and adapters.
"""

from .booking_service import BookingService, parse_month

__all__ = ["BookingService", "parse_month"]
