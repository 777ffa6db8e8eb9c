"""Plain-dict views of ORM rows and read models for JSON responses."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from sqlalchemy import inspect

from careroster.scheduling.templates import TemplateView
from careroster.visits.models import DeliveryRecord


def row_to_dict(row) -> dict[str, Any]:
    """Column values of a mapped row, skipping attributes not loaded in memory."""
    unloaded = inspect(row).unloaded
    return {
        column.key: getattr(row, column.key)
        for column in row.__table__.columns
        if column.key not in unloaded
    }


def template_view_to_dict(view: TemplateView) -> dict[str, Any]:
    data = row_to_dict(view.template)
    data["weeks"] = [
        {**row_to_dict(week.week), "events": [row_to_dict(e) for e in week.events]}
        for week in view.weeks
    ]
    return data


def delivery_to_dict(record: DeliveryRecord) -> dict[str, Any]:
    data = asdict(record)
    data["status"] = record.status.value
    data["has_gps_mismatch"] = record.has_gps_mismatch
    return data
