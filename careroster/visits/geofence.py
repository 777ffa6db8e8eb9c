"""Great-circle distance and geofence validity for EVV check events."""

from __future__ import annotations

import math
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from careroster.config import get_config
from careroster.core.errors import ValidationError
from careroster.db.models import PatientAddressModel
from careroster.models import GeofenceResult, GeoPoint

EARTH_RADIUS_M = 6_371_000.0


def validate_coordinates(latitude: float, longitude: float) -> None:
    if latitude is None or longitude is None:
        raise ValidationError("Latitude and longitude are required")
    if not -90.0 <= latitude <= 90.0:
        raise ValidationError(f"Latitude out of range: {latitude}")
    if not -180.0 <= longitude <= 180.0:
        raise ValidationError(f"Longitude out of range: {longitude}")


def _coords(point: GeoPoint | tuple[float, float]) -> tuple[float, float]:
    if isinstance(point, tuple):
        return point
    return point.latitude, point.longitude


def distance_meters(
    point_a: GeoPoint | tuple[float, float], point_b: GeoPoint | tuple[float, float]
) -> float:
    """Haversine distance in meters between two (lat, lon) points."""
    lat1, lon1 = _coords(point_a)
    lat2, lon2 = _coords(point_b)
    validate_coordinates(lat1, lon1)
    validate_coordinates(lat2, lon2)

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def validate(
    recorded: GeoPoint | tuple[float, float],
    reference: GeoPoint | tuple[float, float] | None,
    threshold_meters: float | None = None,
) -> GeofenceResult:
    """Compare a recorded point to a reference point.

    The boundary is inclusive: ``distance <= threshold`` is valid. Without a
    reference the outcome is unknown (``is_valid is None``), not invalid.
    """
    if threshold_meters is None:
        threshold_meters = get_config().geofence.threshold_meters

    if reference is None:
        lat, lon = _coords(recorded)
        validate_coordinates(lat, lon)
        return GeofenceResult(distance_m=None, is_valid=None, threshold_m=threshold_meters)

    distance = distance_meters(recorded, reference)
    return GeofenceResult(
        distance_m=distance,
        is_valid=distance <= threshold_meters,
        threshold_m=threshold_meters,
    )


def format_distance(meters: float | None) -> str:
    """``"250 m"`` below one kilometer, ``"1.50 km"`` from there on."""
    if meters is None:
        return "unknown"
    if meters < 1000:
        return f"{meters:.0f} m"
    return f"{meters / 1000:.2f} km"


async def patient_reference_point(session: AsyncSession, patient_id: UUID) -> GeoPoint | None:
    """Main registered address of a patient, if it has coordinates."""
    result = await session.execute(
        select(PatientAddressModel)
        .where(
            PatientAddressModel.patient_id == patient_id,
            PatientAddressModel.is_main.is_(True),
            PatientAddressModel.latitude.is_not(None),
            PatientAddressModel.longitude.is_not(None),
        )
        .order_by(PatientAddressModel.created_at.desc())
        .limit(1)
    )
    address = result.scalar_one_or_none()
    if address is None:
        return None
    return GeoPoint(latitude=address.latitude, longitude=address.longitude)
