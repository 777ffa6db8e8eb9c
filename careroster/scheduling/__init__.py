"""Recurring templates, materialization and occurrence management."""

from careroster.scheduling.events import OccurrenceService
from careroster.scheduling.materializer import ScheduleMaterializer
from careroster.scheduling.templates import TemplateStore

__all__ = ["OccurrenceService", "ScheduleMaterializer", "TemplateStore"]
