"""Ambulance dispatch and trip-lifecycle coordination."""

from .ambulance import Ambulance, AmbulanceStatus
from .auth import Actor, Role, parse_credential
from .bus import NotificationBus, Subscription
from .center import DispatchCenter
from .config import DispatchSettings
from .errors import (
    ConflictError,
    DispatchError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from .events import AmbulanceLocationChanged, AmbulanceStatusChanged, TripCreated, TripUpdated
from .geo import GeoIndex, GeoPoint
from .ledger import TripLedger
from .matcher import DispatchMatcher
from .registry import AmbulanceRegistry
from .trip import CompletionReason, Trip, TripStatus

__all__ = [
    "Actor",
    "Ambulance",
    "AmbulanceLocationChanged",
    "AmbulanceRegistry",
    "AmbulanceStatus",
    "AmbulanceStatusChanged",
    "CompletionReason",
    "ConflictError",
    "DispatchCenter",
    "DispatchError",
    "DispatchMatcher",
    "DispatchSettings",
    "GeoIndex",
    "GeoPoint",
    "InvalidTransitionError",
    "NotFoundError",
    "NotificationBus",
    "Role",
    "Subscription",
    "Trip",
    "TripCreated",
    "TripLedger",
    "TripStatus",
    "TripUpdated",
    "UnauthorizedError",
    "ValidationError",
    "parse_credential",
]
