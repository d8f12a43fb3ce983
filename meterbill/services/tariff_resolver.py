"""Tariff resolution for a meter at a date, with a per-(meter, day) cache."""

import logging
import threading
from datetime import date
from decimal import Decimal
from enum import IntEnum
from typing import NamedTuple, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from meterbill.models import Meter, Tariff
from meterbill.services.audit_service import AuditService
from meterbill.services.config import BillingSettings
from meterbill.services.errors import InvalidInputError, NotFoundError, TariffNotFoundError
from meterbill.services.money import to_decimal

logger = logging.getLogger(__name__)


class MatchLevel(IntEnum):
    """Precedence level at which a tariff matched (lower is more specific)."""

    EXACT_TYPE = 1
    ANY_TYPE = 2
    DEFAULT = 3
    FALLBACK = 4


class TariffResolution(NamedTuple):
    """Resolved tariff and how it was found."""

    tariff: Tariff
    match_level: MatchLevel

    @property
    def degraded(self) -> bool:
        return self.match_level == MatchLevel.FALLBACK

    @property
    def rate(self) -> Decimal:
        return self.tariff.rate


class TariffCache:
    """Thread-safe map of (meter_id, day) to (tariff_id, match level).

    Ids are cached rather than ORM objects so a cached result can be used from
    any session.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[int, date], tuple[int, MatchLevel]] = {}
        self._lock = threading.Lock()

    def get(self, meter_id: int, on_date: date) -> Optional[tuple[int, MatchLevel]]:
        with self._lock:
            return self._entries.get((meter_id, on_date))

    def put(self, meter_id: int, on_date: date, tariff_id: int, level: MatchLevel) -> None:
        with self._lock:
            self._entries[(meter_id, on_date)] = (tariff_id, level)

    def invalidate(self, meter_id: int | None = None) -> None:
        """Drop cached results for one meter, or everything when meter_id is None."""
        with self._lock:
            if meter_id is None:
                self._entries.clear()
            else:
                for key in [k for k in self._entries if k[0] == meter_id]:
                    del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


# Shared across resolver instances so TariffService can invalidate for everyone
tariff_cache = TariffCache()


def _covering(query, on_date: date):
    return query.filter(
        Tariff.effective_from <= on_date,
        or_(Tariff.effective_to.is_(None), Tariff.effective_to >= on_date),
    )


class TariffResolver:
    """Resolve the rate rule for a meter on a date.

    Only active tariffs whose window covers the date are considered. First
    match wins:
      1. tariff for the meter's exact type
      2. untyped tariff
      3. default tariff for the meter's type or untyped
      4. any tariff (logged as degraded)
    Within a level the most recent effective_from wins, then the lowest id.
    """

    def __init__(self, db: Session, settings: BillingSettings, cache: TariffCache | None = None):
        self.db = db
        self.settings = settings
        self.cache = cache if cache is not None else tariff_cache

    def resolve(self, meter: Meter, on_date: date) -> TariffResolution:
        """Resolve tariff for meter at on_date.

        Raises:
            TariffNotFoundError: No active tariff covers on_date
        """
        if self.settings.tariff_cache_enabled:
            cached = self.cache.get(meter.id, on_date)
            if cached is not None:
                tariff = self.db.get(Tariff, cached[0])
                if tariff is not None and tariff.is_active:
                    return TariffResolution(tariff, cached[1])
                self.cache.invalidate(meter.id)

        resolution = self._resolve_uncached(meter, on_date)
        if self.settings.tariff_cache_enabled:
            self.cache.put(meter.id, on_date, resolution.tariff.id, resolution.match_level)
        return resolution

    def _resolve_uncached(self, meter: Meter, on_date: date) -> TariffResolution:
        # Every level only considers tariffs in effect on the date
        active = _covering(self.db.query(Tariff).filter(Tariff.is_active.is_(True)), on_date)
        newest_first = (Tariff.effective_from.desc(), Tariff.id.asc())

        exact = active.filter(Tariff.meter_type == meter.meter_type).order_by(*newest_first).first()
        if exact is not None:
            return TariffResolution(exact, MatchLevel.EXACT_TYPE)

        untyped = active.filter(Tariff.meter_type.is_(None)).order_by(*newest_first).first()
        if untyped is not None:
            return TariffResolution(untyped, MatchLevel.ANY_TYPE)

        default = (
            active.filter(
                Tariff.is_default.is_(True),
                or_(Tariff.meter_type == meter.meter_type, Tariff.meter_type.is_(None)),
            )
            # Prefer the type-scoped default over the untyped one
            .order_by(Tariff.meter_type.is_(None), *newest_first)
            .first()
        )
        if default is not None:
            return TariffResolution(default, MatchLevel.DEFAULT)

        fallback = active.order_by(*newest_first).first()
        if fallback is not None:
            logger.warning(
                "Degraded tariff match for meter %s (type %s) on %s: using tariff %d (%s)",
                meter.meter_number,
                meter.meter_type,
                on_date,
                fallback.id,
                fallback.name,
            )
            return TariffResolution(fallback, MatchLevel.FALLBACK)

        raise TariffNotFoundError(
            f"No active tariff for meter {meter.meter_number} (type {meter.meter_type}) "
            f"on {on_date}",
            field="tariff",
        )

    def get_active_tariffs(self, on_date: date) -> list[Tariff]:
        """Active tariffs whose window covers on_date, by name."""
        return (
            _covering(self.db.query(Tariff).filter(Tariff.is_active.is_(True)), on_date)
            .order_by(Tariff.name, Tariff.id)
            .all()
        )

    @staticmethod
    def is_applicable(tariff: Tariff, meter: Meter, on_date: date) -> bool:
        if not tariff.is_active or not tariff.covers(on_date):
            return False
        return tariff.meter_type is None or tariff.meter_type == meter.meter_type

    def invalidate(self, meter_id: int | None = None) -> None:
        self.cache.invalidate(meter_id)


class TariffService:
    """Tariff writes; every change clears the resolution cache."""

    def __init__(self, db: Session, cache: TariffCache | None = None):
        self.db = db
        self.cache = cache if cache is not None else tariff_cache

    def create_tariff(
        self,
        name: str,
        rate: Decimal,
        effective_from: date,
        effective_to: date | None = None,
        meter_type: str | None = None,
        is_default: bool = False,
        actor_id: int | None = None,
    ) -> Tariff:
        rate = to_decimal(rate)
        if rate < 0:
            raise InvalidInputError(f"Tariff rate cannot be negative: {rate}", field="rate")
        if effective_to is not None and effective_to < effective_from:
            raise InvalidInputError(
                "Tariff effective_to must not be before effective_from", field="effective_to"
            )

        try:
            tariff = Tariff(
                name=name,
                rate=rate,
                effective_from=effective_from,
                effective_to=effective_to,
                meter_type=meter_type,
                is_default=is_default,
                is_active=True,
            )
            self.db.add(tariff)
            self.db.flush()
            AuditService.log(
                self.db, "tariff", tariff.id, "tariff.created", actor_id,
                {"name": name, "rate": str(rate), "meter_type": meter_type},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.cache.invalidate()
        logger.info("Created tariff %d (%s) at rate %s", tariff.id, name, rate)
        return tariff

    def deactivate_tariff(self, tariff_id: int, actor_id: int | None = None) -> Tariff:
        tariff = self.db.get(Tariff, tariff_id)
        if tariff is None:
            raise NotFoundError(f"Tariff {tariff_id} not found", field="tariff_id")

        try:
            tariff.is_active = False
            AuditService.log(self.db, "tariff", tariff.id, "tariff.deactivated", actor_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.cache.invalidate()
        logger.info("Deactivated tariff %d (%s)", tariff.id, tariff.name)
        return tariff


__all__ = [
    "MatchLevel",
    "TariffCache",
    "TariffResolution",
    "TariffResolver",
    "TariffService",
    "tariff_cache",
]
