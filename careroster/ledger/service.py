"""Authorization unit ledger.

Balances are aggregates over ``unit_consumptions``. ``AuthorizationModel.total_used``
is a cached projection that is recomputed from the ledger sum after every
posting and can be rebuilt wholesale with :meth:`AuthorizationLedger.rebuild_projections`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from careroster.core.errors import ConflictError, NotFoundError, ValidationError
from careroster.db.models import AuthorizationModel, ScheduleEventModel, UnitConsumptionModel
from careroster.models import AuthorizationBalance, LedgerEntry, OccurrenceStatus, SourceType

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def is_active_on(authorization: AuthorizationModel, on_date: date) -> bool:
    """``start_date <= on_date`` and (open-ended or ``end_date > on_date``)."""
    if authorization.start_date > on_date:
        return False
    return authorization.end_date is None or authorization.end_date > on_date


def _to_decimal(units: Decimal | int | float | str) -> Decimal:
    if isinstance(units, Decimal):
        return units
    return Decimal(str(units))


def _to_entry(row: UnitConsumptionModel) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        authorization_id=row.authorization_id,
        source_type=SourceType(row.source_type),
        source_id=row.source_id,
        service_date=row.service_date,
        units_used=row.units_used,
        recorded_at=row.recorded_at,
    )


@dataclass(slots=True)
class LedgerPosting:
    """Outcome of a posting attempt.

    ``created`` is False when an entry for the same source already existed, in
    which case ``entry`` is that first entry. ``over_authorized`` flags a posting
    that pushed the balance below zero; it is a policy warning, not an error.
    """

    entry: LedgerEntry
    created: bool
    over_authorized: bool
    remaining_after: Decimal


class AuthorizationLedger:
    """Unit consumption ledger over authorizations."""

    def __init__(self, session: AsyncSession):
        """Initialize ledger with database session.

        Args:
            session: SQLAlchemy async session
        """
        self.session = session

    async def create_authorization(
        self,
        patient_id: UUID,
        authorization_no: str,
        max_units: Decimal | int,
        start_date: date,
        end_date: date | None = None,
        *,
        patient_payer_id: UUID | None = None,
        patient_service_id: UUID | None = None,
        event_code: str | None = None,
        comments: str | None = None,
    ) -> AuthorizationModel:
        """Register a payer-approved authorization.

        Raises:
            ValidationError: If max_units is negative or the period is inverted
            ConflictError: If the authorization number is already used
        """
        max_units = _to_decimal(max_units)
        if max_units < 0:
            raise ValidationError("max_units must be >= 0")
        if end_date is not None and start_date > end_date:
            raise ValidationError("start_date must be on or before end_date")
        if not authorization_no or not authorization_no.strip():
            raise ValidationError("authorization_no is required")

        existing = await self.session.execute(
            select(AuthorizationModel.id).where(
                AuthorizationModel.authorization_no == authorization_no
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(f"Authorization number already exists: {authorization_no}")

        authorization = AuthorizationModel(
            patient_id=patient_id,
            authorization_no=authorization_no,
            max_units=max_units,
            total_used=ZERO,
            start_date=start_date,
            end_date=end_date,
            patient_payer_id=patient_payer_id,
            patient_service_id=patient_service_id,
            event_code=event_code,
            comments=comments,
        )
        self.session.add(authorization)
        await self.session.flush()

        logger.info(
            f"Created authorization {authorization_no} for patient {patient_id}: "
            f"{max_units} units {start_date}..{end_date or 'open'}"
        )
        return authorization

    async def get_authorization(self, authorization_id: UUID) -> AuthorizationModel:
        authorization = await self.session.get(AuthorizationModel, authorization_id)
        if authorization is None:
            raise NotFoundError("Authorization", authorization_id)
        return authorization

    async def used_units(self, authorization_id: UUID) -> Decimal:
        """Sum of ``units_used`` over all ledger entries (adjustments included)."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(UnitConsumptionModel.units_used), 0)).where(
                UnitConsumptionModel.authorization_id == authorization_id
            )
        )
        return _to_decimal(result.scalar_one())

    async def remaining_units(self, authorization_id: UUID) -> Decimal:
        """``max_units - sum(units_used)``, read from the ledger on every call.

        May be negative when the authorization is overdrawn.

        Raises:
            NotFoundError: If the authorization does not exist
        """
        authorization = await self.get_authorization(authorization_id)
        return authorization.max_units - await self.used_units(authorization_id)

    async def find_entry(self, source_type: SourceType, source_id: UUID) -> LedgerEntry | None:
        row = await self._find_row(source_type, source_id)
        return _to_entry(row) if row is not None else None

    async def _find_row(
        self, source_type: SourceType, source_id: UUID
    ) -> UnitConsumptionModel | None:
        result = await self.session.execute(
            select(UnitConsumptionModel).where(
                and_(
                    UnitConsumptionModel.source_type == source_type.value,
                    UnitConsumptionModel.source_id == source_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def post_consumption(
        self,
        authorization_id: UUID,
        source_type: SourceType,
        source_id: UUID,
        service_date: date,
        units: Decimal | int,
    ) -> LedgerPosting:
        """Post a ledger entry exactly once per ``(source_type, source_id)``.

        A repeated posting for the same source returns the first entry unchanged,
        whatever ``units`` it carries. Postings that exceed the remaining balance
        are recorded and flagged rather than rejected.

        Args:
            authorization_id: Authorization to debit
            source_type: Origin of the posting
            source_id: Id of the originating record (delivery, occurrence, or reversed entry)
            service_date: Date of service
            units: Units consumed (negative only for adjustments)

        Returns:
            LedgerPosting describing the entry and the balance after it

        Raises:
            NotFoundError: If the authorization does not exist
            ValidationError: If units are negative on a non-adjustment posting
        """
        source_type = SourceType(source_type)
        units = _to_decimal(units)
        if units < 0 and source_type != SourceType.ADJUSTMENT:
            raise ValidationError("Only adjustment entries may carry negative units")

        authorization = await self.get_authorization(authorization_id)

        existing = await self._find_row(source_type, source_id)
        if existing is not None:
            logger.debug(
                f"Ledger entry for {source_type.value}:{source_id} already posted; skipping"
            )
            remaining = authorization.max_units - await self.used_units(authorization_id)
            return LedgerPosting(
                entry=_to_entry(existing),
                created=False,
                over_authorized=False,
                remaining_after=remaining,
            )

        row = UnitConsumptionModel(
            authorization_id=authorization_id,
            source_type=source_type.value,
            source_id=source_id,
            service_date=service_date,
            units_used=units,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(row)
        except IntegrityError:
            # Lost a race with a concurrent posting of the same source
            existing = await self._find_row(source_type, source_id)
            if existing is None:
                raise
            remaining = authorization.max_units - await self.used_units(authorization_id)
            return LedgerPosting(
                entry=_to_entry(existing),
                created=False,
                over_authorized=False,
                remaining_after=remaining,
            )

        used = await self.used_units(authorization_id)
        authorization.total_used = used
        remaining = authorization.max_units - used
        over_authorized = units > 0 and remaining < 0

        if over_authorized:
            logger.warning(
                f"Authorization {authorization.authorization_no} overdrawn by {-remaining} units "
                f"after {source_type.value}:{source_id} ({units} units on {service_date})"
            )
        else:
            logger.info(
                f"Posted {units} units to {authorization.authorization_no} "
                f"({source_type.value}:{source_id}); remaining {remaining}"
            )

        return LedgerPosting(
            entry=_to_entry(row),
            created=True,
            over_authorized=over_authorized,
            remaining_after=remaining,
        )

    async def reverse_consumption(self, entry_id: UUID) -> LedgerPosting:
        """Post an adjustment negating an existing entry. Idempotent per entry.

        Raises:
            NotFoundError: If the entry does not exist
            ValidationError: If the entry is itself an adjustment
        """
        original = await self.session.get(UnitConsumptionModel, entry_id)
        if original is None:
            raise NotFoundError("Ledger entry", entry_id)
        if original.source_type == SourceType.ADJUSTMENT.value:
            raise ValidationError("Adjustment entries cannot be reversed")

        return await self.post_consumption(
            authorization_id=original.authorization_id,
            source_type=SourceType.ADJUSTMENT,
            source_id=original.id,
            service_date=original.service_date,
            units=-original.units_used,
        )

    async def reverse_source(
        self, source_type: SourceType, source_id: UUID
    ) -> LedgerPosting | None:
        """Reverse the entry posted for a source, if there is one."""
        row = await self._find_row(source_type, source_id)
        if row is None:
            return None
        return await self.reverse_consumption(row.id)

    async def balance(self, authorization_id: UUID) -> AuthorizationBalance:
        """Ledger-derived balance, with missed units from cancelled occurrences."""
        authorization = await self.get_authorization(authorization_id)
        used = await self.used_units(authorization_id)

        missed_result = await self.session.execute(
            select(func.coalesce(func.sum(ScheduleEventModel.planned_units), 0)).where(
                and_(
                    ScheduleEventModel.authorization_id == authorization_id,
                    ScheduleEventModel.status == OccurrenceStatus.CANCELLED.value,
                )
            )
        )
        missed = _to_decimal(missed_result.scalar_one())

        remaining = authorization.max_units - used
        return AuthorizationBalance(
            authorization_id=authorization.id,
            authorization_no=authorization.authorization_no,
            max_units=authorization.max_units,
            total_used=used,
            total_missed=missed,
            total_remaining=max(remaining, ZERO),
            overdrawn_by=max(-remaining, ZERO),
        )

    async def entries(self, authorization_id: UUID) -> list[LedgerEntry]:
        """Ledger history for an authorization, oldest first."""
        await self.get_authorization(authorization_id)
        result = await self.session.execute(
            select(UnitConsumptionModel)
            .where(UnitConsumptionModel.authorization_id == authorization_id)
            .order_by(UnitConsumptionModel.recorded_at.asc(), UnitConsumptionModel.id)
        )
        return [_to_entry(row) for row in result.scalars().all()]

    async def rebuild_projections(self) -> int:
        """Recompute every cached ``total_used`` from the ledger.

        Returns:
            Number of authorizations whose cached value was out of date
        """
        sums = await self.session.execute(
            select(
                UnitConsumptionModel.authorization_id,
                func.sum(UnitConsumptionModel.units_used),
            ).group_by(UnitConsumptionModel.authorization_id)
        )
        used_by_auth = {auth_id: _to_decimal(total) for auth_id, total in sums.all()}

        result = await self.session.execute(select(AuthorizationModel))
        drifted = 0
        for authorization in result.scalars().all():
            used = used_by_auth.get(authorization.id, ZERO)
            if authorization.total_used != used:
                logger.warning(
                    f"Authorization {authorization.authorization_no} projection drifted: "
                    f"cached {authorization.total_used}, ledger {used}"
                )
                authorization.total_used = used
                drifted += 1

        await self.session.flush()
        return drifted
