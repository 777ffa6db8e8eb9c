"""Database layer for CareRoster with async SQLAlchemy."""

from careroster.db.connection import get_db, get_session, init_db
from careroster.db.models import (
    AuditLogModel,
    AuthorizationModel,
    Base,
    CheckEventModel,
    PatientAddressModel,
    ScheduleEventModel,
    ScheduleTemplateModel,
    ServiceDeliveryModel,
    TemplateEventModel,
    TemplateWeekModel,
    UnitConsumptionModel,
)

__all__ = [
    "Base",
    "AuditLogModel",
    "AuthorizationModel",
    "CheckEventModel",
    "PatientAddressModel",
    "ScheduleEventModel",
    "ScheduleTemplateModel",
    "ServiceDeliveryModel",
    "TemplateEventModel",
    "TemplateWeekModel",
    "UnitConsumptionModel",
    "get_db",
    "get_session",
    "init_db",
]
