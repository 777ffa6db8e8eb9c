"""Service delivery lifecycle and EVV geofencing."""

from careroster.visits.lifecycle import VisitLifecycleManager
from careroster.visits.models import CheckEventRecord, DeliveryRecord, derive_status

__all__ = ["CheckEventRecord", "DeliveryRecord", "VisitLifecycleManager", "derive_status"]
