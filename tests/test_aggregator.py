"""Tests for usage aggregation, realtime ingestion and snapshots."""

import asyncio
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from powerwatch.aggregator import UsageAggregator
from powerwatch.errors import StaleDataError, TibberError
from powerwatch.models import (
    ConsumptionRecord,
    Site,
    SiteRegistry,
    SiteState,
    SpotPriceRecord,
    UsageAndPrices,
)

OSLO = ZoneInfo("Europe/Oslo")
# A Wednesday in winter
NOW = datetime(2025, 1, 15, 10, 30, tzinfo=OSLO)

HOME = Site(name="home", external_id="home-id")
CABIN = Site(name="cabin", external_id="cabin-id", support_eligible=False, bursty_production=True)
SITES = SiteRegistry.from_sites([HOME, CABIN])


class FakeClient:
    def __init__(self, data=None, error=None):
        self.data = data
        self.error = error
        self.calls = []

    async def fetch_month_to_date(self, site, now):
        self.calls.append((site.name, now))
        if self.error:
            raise self.error
        return self.data


def hourly_consumption(start, end, kwh=1.0, unit_price=1.0):
    records = []
    hour = start
    while hour < end:
        records.append(ConsumptionRecord(hour, hour + timedelta(hours=1), kwh, unit_price))
        hour += timedelta(hours=1)
    return records


def day_prices(day, energy=1.0, tax=0.2):
    start = day.replace(hour=0, minute=0, second=0, microsecond=0)
    return [SpotPriceRecord(start + timedelta(hours=h), energy, tax) for h in range(24)]


@pytest.fixture
def month_data():
    # One record from last month, then 1 kWh every hour up to 09:00 today
    consumption = hourly_consumption(
        datetime(2024, 12, 31, 23, 0, tzinfo=OSLO), NOW.replace(minute=0)
    )
    return UsageAndPrices(consumption=consumption, prices=day_prices(NOW))


def make_sample(**overrides):
    sample = {
        "timestamp": "2025-01-15T10:30:00.000+01:00",
        "power": 1200.0,
        "accumulatedConsumption": 12.5,
        "accumulatedProduction": 0.5,
        "accumulatedCost": None,
        "minPower": 100.0,
        "averagePower": 800.0,
        "maxPower": 3000.0,
        "accumulatedReward": None,
        "powerProduction": None,
        "minPowerProduction": None,
        "maxPowerProduction": None,
    }
    sample.update(overrides)
    return sample


def make_aggregator(client=None, now=NOW):
    return UsageAggregator(SITES, client, clock=lambda: now)


def test_refresh_builds_month_and_day(month_data):
    aggregator = make_aggregator(FakeClient(month_data))

    assert aggregator.state(HOME) is SiteState.UNINITIALIZED
    assert asyncio.run(aggregator.refresh_usage_and_prices(HOME, NOW)) is True
    assert aggregator.state(HOME) is SiteState.POPULATED

    status = aggregator.snapshot()["home"]
    # 14 full days plus 10 hours today; December's record is not counted
    assert status.month.consumption == 14 * 24 + 10
    assert status.month.cost == pytest.approx(346.0)
    assert status.usage_today_up_to_this_hour == pytest.approx(10.0)
    assert sorted(status.usage_for_day) == list(range(10))
    assert status.last_hour_seen == 9
    assert len(status.prices) == 24


def test_refresh_prices_and_costs_with_support(month_data):
    aggregator = make_aggregator(FakeClient(month_data))
    asyncio.run(aggregator.refresh_usage_and_prices(HOME, NOW))
    status = aggregator.snapshot()["home"]

    night = status.prices[3]
    assert night.transport_cost == 0.2895
    # 1.0 energy gets 0.27 support, plus 0.2 tax
    assert night.energy_after_support == pytest.approx(0.93)
    assert night.total_after_support == pytest.approx(1.2195)

    assert status.current_price == status.prices[10]
    assert status.current_price.total_after_support == pytest.approx(0.93 + 0.352)

    usage = status.usage_for_day[3]
    assert usage.consumption == 1.0
    assert usage.energy_cost == pytest.approx(0.93)
    assert usage.transport_cost == pytest.approx(0.2895)
    assert usage.total_cost == pytest.approx(1.2195)
    assert status.day.cost == pytest.approx(6 * 1.2195 + 4 * 1.282)


def test_refresh_ineligible_site_has_no_support(month_data):
    aggregator = make_aggregator(FakeClient(month_data))
    asyncio.run(aggregator.refresh_usage_and_prices(CABIN, NOW))
    status = aggregator.snapshot()["cabin"]

    assert status.month.consumption == 346
    assert status.prices[10].energy_after_support == pytest.approx(1.2)
    assert status.current_price.total_after_support == pytest.approx(1.552)


def test_refresh_above_cutoff_has_no_support():
    now = datetime(2025, 1, 2, 1, 30, tzinfo=OSLO)
    consumption = hourly_consumption(
        datetime(2025, 1, 1, tzinfo=OSLO), now.replace(minute=0), kwh=250.0
    )
    aggregator = make_aggregator(FakeClient(UsageAndPrices(consumption, day_prices(now))), now)

    asyncio.run(aggregator.refresh_usage_and_prices(HOME, now))
    status = aggregator.snapshot()["home"]

    assert status.month.consumption == 25 * 250
    assert status.current_price.energy_after_support == pytest.approx(1.2)


def test_month_usage_sums_before_rounding():
    now = datetime(2025, 1, 1, 3, 30, tzinfo=OSLO)
    consumption = hourly_consumption(
        datetime(2025, 1, 1, tzinfo=OSLO), now.replace(minute=0), kwh=0.6
    )
    aggregator = make_aggregator(FakeClient(UsageAndPrices(consumption, day_prices(now))), now)

    asyncio.run(aggregator.refresh_usage_and_prices(HOME, now))

    # 1.8 kWh rounds to 2; rounding each record first would give 3
    assert aggregator.snapshot()["home"].month.consumption == 2


def test_failed_fetch_keeps_previous_status(month_data):
    client = FakeClient(month_data)
    aggregator = make_aggregator(client)
    asyncio.run(aggregator.refresh_usage_and_prices(HOME, NOW))
    aggregator.ingest_realtime_sample(HOME, make_sample(), NOW)
    before = aggregator.snapshot()

    client.error = TibberError("Network error connecting to Tibber")
    result = asyncio.run(aggregator.refresh_usage_and_prices(HOME, NOW + timedelta(hours=1)))

    assert result is False
    assert dict(aggregator.snapshot()) == dict(before)
    assert aggregator.state(HOME) is SiteState.POPULATED


def test_failed_first_fetch_stays_uninitialized():
    aggregator = make_aggregator(FakeClient(error=TibberError("HTTP error from Tibber: 500")))

    assert asyncio.run(aggregator.refresh_usage_and_prices(HOME, NOW)) is False
    assert aggregator.state(HOME) is SiteState.UNINITIALIZED
    assert aggregator.snapshot()["home"].prices == {}


def test_refresh_keeps_realtime_values(month_data):
    aggregator = make_aggregator(FakeClient(month_data))
    aggregator.ingest_realtime_sample(HOME, make_sample(power=900.0), NOW)

    asyncio.run(aggregator.refresh_usage_and_prices(HOME, NOW))
    status = aggregator.snapshot()["home"]

    assert status.power == 900.0
    assert status.day.consumption == pytest.approx(12.0)


def test_refresh_keeps_sample_received_during_fetch(month_data):
    aggregator = make_aggregator()

    class SampleDuringFetchClient(FakeClient):
        async def fetch_month_to_date(self, site, now):
            aggregator.ingest_realtime_sample(
                site, make_sample(power=2500.0, accumulatedConsumption=9.0), now
            )
            await asyncio.sleep(0)
            return await super().fetch_month_to_date(site, now)

    aggregator.client = SampleDuringFetchClient(month_data)
    aggregator.ingest_realtime_sample(HOME, make_sample(power=900.0), NOW)

    assert asyncio.run(aggregator.refresh_usage_and_prices(HOME, NOW)) is True
    status = aggregator.snapshot()["home"]

    assert status.power == 2500.0
    assert status.day.consumption == pytest.approx(8.5)
    assert status.month.consumption == 346


def test_refresh_all(month_data):
    client = FakeClient(month_data)
    aggregator = make_aggregator(client)

    results = asyncio.run(aggregator.refresh_all(NOW))

    assert results == {"home": True, "cabin": True}
    assert [name for name, _ in client.calls] == ["home", "cabin"]


def test_ingest_updates_power_and_day():
    aggregator = make_aggregator()

    aggregator.ingest_realtime_sample(HOME, make_sample(), NOW)
    status = aggregator.snapshot()["home"]

    assert status.power == 1200.0
    assert status.day.consumption == pytest.approx(12.0)
    assert status.day.production == 0.5
    assert status.max_power == 3000.0


def test_invalid_sample_is_dropped():
    aggregator = make_aggregator()
    aggregator.ingest_realtime_sample(HOME, make_sample(), NOW)
    before = aggregator.snapshot()

    missing = make_sample()
    del missing["power"]
    assert aggregator.ingest_realtime_sample(HOME, missing, NOW + timedelta(seconds=30)) is False
    assert aggregator.ingest_realtime_sample(HOME, make_sample(power="12"), NOW) is False
    assert aggregator.ingest_realtime_sample(HOME, make_sample(minPower=None), NOW) is False

    assert dict(aggregator.snapshot()) == dict(before)
    assert aggregator.seconds_since_last_sample(NOW) == 0


def test_bursty_production_reuses_last_value():
    aggregator = make_aggregator()

    aggregator.ingest_realtime_sample(CABIN, make_sample(power=0, powerProduction=150), NOW)
    assert aggregator.snapshot()["cabin"].power == -150

    aggregator.ingest_realtime_sample(
        CABIN, make_sample(power=0, powerProduction=None), NOW + timedelta(seconds=2)
    )
    assert aggregator.snapshot()["cabin"].power == -150

    aggregator.ingest_realtime_sample(CABIN, make_sample(power=400), NOW + timedelta(seconds=4))
    assert aggregator.snapshot()["cabin"].power == 400


def test_zero_power_without_bursty_production():
    aggregator = make_aggregator()

    aggregator.ingest_realtime_sample(HOME, make_sample(power=0, powerProduction=150), NOW)

    status = aggregator.snapshot()["home"]
    assert status.power == 0
    assert status.power_production == 150


def test_rate_limit_forwarding():
    """Samples every second for 20 seconds are forwarded every 15 seconds."""
    aggregator = make_aggregator()
    forwarded = []

    for i in range(20):
        now = NOW + timedelta(seconds=i)
        if aggregator.ingest_realtime_sample(HOME, make_sample(power=float(i * 10)), now):
            forwarded.append(i)
        assert aggregator.snapshot()["home"].power == i * 10

    assert forwarded == [0, 15]
    assert aggregator.last_forwarded(HOME) == NOW + timedelta(seconds=15)
    assert aggregator.last_forwarded(CABIN) is None


def test_day_cost_estimate_after_refresh(month_data):
    aggregator = make_aggregator(FakeClient(month_data))
    asyncio.run(aggregator.refresh_usage_and_prices(HOME, NOW))

    aggregator.ingest_realtime_sample(
        HOME, make_sample(accumulatedConsumption=10.5, accumulatedProduction=0.0), NOW
    )

    settled = 6 * 1.2195 + 4 * 1.282
    assert aggregator.snapshot()["home"].day.cost == pytest.approx(settled + 0.5 * 1.282)


def test_snapshot_is_idempotent_and_read_only():
    aggregator = make_aggregator()
    aggregator.ingest_realtime_sample(HOME, make_sample(), NOW)

    first = aggregator.snapshot()
    assert dict(aggregator.snapshot()) == dict(first)

    first["home"].power = 0
    assert aggregator.snapshot()["home"].power == 1200.0
    with pytest.raises(TypeError):
        first["home"] = None


def test_staleness():
    aggregator = UsageAggregator(SITES, max_sample_age=30, clock=lambda: NOW)

    # No sample yet: age counts from startup
    assert aggregator.seconds_since_last_sample(NOW + timedelta(seconds=10)) == 10

    aggregator.ingest_realtime_sample(HOME, make_sample(), NOW + timedelta(seconds=10))
    assert aggregator.seconds_since_last_sample(NOW + timedelta(seconds=40)) == 30
    assert not aggregator.is_stale(NOW + timedelta(seconds=40))
    assert aggregator.is_stale(NOW + timedelta(seconds=41))

    with pytest.raises(StaleDataError, match="31s old"):
        aggregator.check_fresh(NOW + timedelta(seconds=41))
