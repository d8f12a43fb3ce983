"""Unit tests for tariff precedence and the resolution cache."""

from datetime import date
from decimal import Decimal

import pytest

from meterbill.models import AuditLog
from meterbill.services.errors import InvalidInputError, TariffNotFoundError
from meterbill.services.tariff_resolver import (
    MatchLevel,
    TariffCache,
    TariffResolver,
    TariffService,
    tariff_cache,
)

ON = date(2024, 2, 29)


@pytest.fixture
def resolver(db, settings):
    return TariffResolver(db, settings)


@pytest.mark.unit
class TestTariffPrecedence:
    def test_exact_type_beats_untyped(self, resolver, meter, make_tariff):
        make_tariff(rate="1.00", meter_type=None)
        exact = make_tariff(rate="2.00", meter_type="water")

        resolution = resolver.resolve(meter, ON)

        assert resolution.tariff.id == exact.id
        assert resolution.match_level == MatchLevel.EXACT_TYPE
        assert not resolution.degraded

    def test_untyped_when_no_exact_covers(self, resolver, meter, make_tariff):
        make_tariff(rate="2.00", meter_type="water", effective_to=date(2024, 1, 31))
        untyped = make_tariff(rate="1.50", meter_type=None)

        resolution = resolver.resolve(meter, ON)

        assert resolution.tariff.id == untyped.id
        assert resolution.match_level == MatchLevel.ANY_TYPE

    def test_default_outside_its_window_is_ignored(self, resolver, meter, make_tariff):
        covering = make_tariff(rate="9.00", meter_type="electricity")
        make_tariff(rate="3.00", meter_type="water", effective_from=date(2025, 1, 1), is_default=True)

        resolution = resolver.resolve(meter, ON)

        assert resolution.tariff.id == covering.id
        assert resolution.tariff.covers(ON)
        assert resolution.match_level == MatchLevel.FALLBACK

    def test_expired_tariffs_are_not_a_fallback(self, resolver, meter, make_tariff):
        make_tariff(rate="2.00", meter_type="water", effective_to=date(2024, 1, 31), is_default=True)
        make_tariff(rate="9.00", meter_type="electricity", effective_from=date(2024, 6, 1))

        with pytest.raises(TariffNotFoundError):
            resolver.resolve(meter, ON)

    def test_fallback_is_degraded_and_logged(self, resolver, meter, make_tariff, caplog):
        other = make_tariff(rate="9.00", meter_type="electricity")

        with caplog.at_level("WARNING"):
            resolution = resolver.resolve(meter, ON)

        assert resolution.tariff.id == other.id
        assert resolution.match_level == MatchLevel.FALLBACK
        assert resolution.degraded
        assert "Degraded tariff match" in caplog.text

    def test_no_active_tariff(self, resolver, meter):
        with pytest.raises(TariffNotFoundError):
            resolver.resolve(meter, ON)

    def test_most_recent_effective_from_wins(self, resolver, meter, make_tariff):
        make_tariff(rate="2.00", effective_from=date(2023, 1, 1))
        newer = make_tariff(rate="2.50", effective_from=date(2024, 2, 1))

        assert resolver.resolve(meter, ON).tariff.id == newer.id
        assert resolver.resolve(meter, date(2024, 1, 15)).rate == Decimal("2.00")

    def test_is_applicable(self, meter, make_tariff):
        tariff = make_tariff(meter_type="electricity")
        assert not TariffResolver.is_applicable(tariff, meter, ON)
        untyped = make_tariff(meter_type=None)
        assert TariffResolver.is_applicable(untyped, meter, ON)
        assert not TariffResolver.is_applicable(untyped, meter, date(2023, 6, 1))

    def test_get_active_tariffs(self, resolver, make_tariff):
        make_tariff(name="b", effective_to=date(2024, 1, 31))
        make_tariff(name="a")
        assert [t.name for t in resolver.get_active_tariffs(ON)] == ["a"]


@pytest.mark.unit
class TestTariffCache:
    def test_results_are_cached_per_meter_and_day(self, resolver, meter, tariff):
        resolver.resolve(meter, ON)
        assert tariff_cache.get(meter.id, ON) == (tariff.id, MatchLevel.EXACT_TYPE)
        assert len(tariff_cache) == 1

    def test_invalidate_one_meter(self):
        cache = TariffCache()
        cache.put(1, ON, 10, MatchLevel.EXACT_TYPE)
        cache.put(2, ON, 10, MatchLevel.EXACT_TYPE)
        cache.invalidate(1)
        assert cache.get(1, ON) is None
        assert cache.get(2, ON) is not None

    def test_tariff_changes_clear_the_cache(self, db, resolver, meter, tariff):
        resolver.resolve(meter, ON)
        service = TariffService(db)

        replacement = service.create_tariff("Water 2024", Decimal("2.75"), date(2024, 2, 1), meter_type="water")
        assert len(tariff_cache) == 0
        assert resolver.resolve(meter, ON).tariff.id == replacement.id

        service.deactivate_tariff(replacement.id)
        assert resolver.resolve(meter, ON).tariff.id == tariff.id

        actions = [a.action for a in db.query(AuditLog).order_by(AuditLog.id)]
        assert actions == ["tariff.created", "tariff.deactivated"]

    def test_cache_disabled(self, db, make_settings, meter, tariff):
        resolver = TariffResolver(db, make_settings(tariff_cache_enabled=False))
        resolver.resolve(meter, ON)
        assert len(tariff_cache) == 0


@pytest.mark.unit
class TestTariffService:
    def test_negative_rate_rejected(self, db):
        with pytest.raises(InvalidInputError):
            TariffService(db).create_tariff("bad", Decimal("-1"), date(2024, 1, 1))

    def test_window_must_not_be_inverted(self, db):
        with pytest.raises(InvalidInputError):
            TariffService(db).create_tariff(
                "bad", Decimal("1"), date(2024, 2, 1), effective_to=date(2024, 1, 1)
            )
