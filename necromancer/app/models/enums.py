"""
Enumerations for the dispatch domain.

Roles, request and offer status, and the service-type catalogue.
"""

import enum
from typing import Optional


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Operations staff, may cancel in-progress work and re-dispatch
        REQUESTER: Customer asking for service (tokens may say USER or CUSTOMER)
        DRIVER: Tow-truck operator receiving offers
    """
    ADMIN = "ADMIN"
    REQUESTER = "REQUESTER"
    DRIVER = "DRIVER"

    @classmethod
    def parse(cls, value) -> Optional["UserRole"]:
        """Resolve a role string, folding the USER/CUSTOMER synonyms into REQUESTER."""
        if isinstance(value, cls):
            return value
        if not value:
            return None
        normalized = str(value).strip().upper()
        if normalized in ("USER", "CUSTOMER"):
            return cls.REQUESTER
        try:
            return cls(normalized)
        except ValueError:
            return None


class RequestStatus(str, enum.Enum):
    """ServiceRequest status enumeration."""
    PENDING = "pending"  # Created, not yet dispatched
    OFFERED = "offered"  # One or more live offers outstanding
    ASSIGNED = "assigned"  # One driver committed
    IN_PROGRESS = "in_progress"  # Work underway, driver-reported
    COMPLETED = "completed"  # Terminal, success
    CANCELLED = "cancelled"  # Terminal, requester or admin initiated
    UNMATCHED = "unmatched"  # No driver after all rounds, may be re-dispatched


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED})

# Statuses in which the request carries an assigned driver
DRIVER_HELD_STATUSES = frozenset({
    RequestStatus.ASSIGNED,
    RequestStatus.IN_PROGRESS,
    RequestStatus.COMPLETED,
})


class OfferStatus(str, enum.Enum):
    """Offer resolution enumeration."""
    PENDING = "pending"  # Issued, awaiting driver response
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"  # Another driver's acceptance was committed
    RETRACTED = "retracted"  # Driver went unavailable or request was cancelled


class ServiceType(str, enum.Enum):
    """Catalogue of services a request may ask for and a driver may offer."""
    LIGHT_DUTY_TOWING = "Light-Duty Towing"
    MEDIUM_DUTY_TOWING = "Medium-Duty Towing"
    HEAVY_DUTY_TOWING = "Heavy-Duty Towing"
    MOTORCYCLE_TOWING = "Motorcycle Towing"
    EMERGENCY_TOWING = "Emergency Towing Services"
    ROADSIDE_ASSISTANCE = "Roadside Assistance"
    LOCKOUTS = "Lockouts"
    JUMP_STARTS = "Jump Starts"
    TIRE_CHANGES = "Tire Changes"
    FUEL_DELIVERY = "Fuel Delivery"
    LONG_DISTANCE_TOWING = "Long Distance Towing"
    FLATBED_TOWING = "Flatbed Towing"
    LOWBOY_TOWING = "Lowboy Towing"
    SPECIALTY_LIFTS = "Specialty Lifts"
    CRANE_SERVICES = "Crane Services"
    IGNITION_KEY_SOLUTIONS = "Ignition Key Solutions"
    HEAVY_DUTY_TIRE_CHANGE = "Professional Heavy Duty Tire Change"
