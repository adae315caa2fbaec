"""Tests for the watcher wiring: forwarding and the staleness guard."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest
from powerwatch.aggregator import UsageAggregator
from powerwatch.config import Settings
from powerwatch.errors import StaleDataError, TibberError
from powerwatch.models import Site, SiteRegistry
from powerwatch.service import PowerWatcher

HOME = Site(name="home", external_id="home-id")
SITES = SiteRegistry.from_sites([HOME])
START = datetime(2025, 1, 15, 10, 0, tzinfo=ZoneInfo("Europe/Oslo"))

SAMPLE = {
    "timestamp": "2025-01-15T10:00:00.000+01:00",
    "power": 800.0,
    "accumulatedConsumption": 3.0,
    "accumulatedProduction": 0.0,
    "accumulatedCost": None,
    "minPower": 100.0,
    "averagePower": 500.0,
    "maxPower": 2000.0,
    "accumulatedReward": None,
    "powerProduction": None,
    "minPowerProduction": None,
    "maxPowerProduction": None,
}


@pytest.fixture
def clock():
    return [START]


@pytest.fixture
def watcher(clock):
    aggregator = UsageAggregator(SITES, clock=lambda: clock[0])
    return PowerWatcher(
        Settings(tibber_key="token", sites=SITES),
        client=MagicMock(),
        publisher=MagicMock(),
        aggregator=aggregator,
    )


def test_requires_mqtt_settings_or_publisher():
    with pytest.raises(ValueError, match="MQTT"):
        PowerWatcher(Settings(tibber_key="token", sites=SITES))


def test_samples_forwarded_at_most_every_interval(watcher, clock):
    for _ in range(20):
        watcher.on_sample(HOME, SAMPLE)
        clock[0] += timedelta(seconds=1)

    assert watcher.publisher.publish_site.call_count == 2
    name, status = watcher.publisher.publish_site.call_args.args
    assert name == "home"
    assert status.power == 800.0


def test_publish_once(watcher, clock):
    watcher.on_sample(HOME, SAMPLE)
    clock[0] += timedelta(seconds=15)

    watcher.publish_once()

    snapshot = watcher.publisher.publish_snapshot.call_args.args[0]
    assert snapshot["home"].power == 800.0


def test_publish_once_refuses_stale_data(watcher, clock):
    watcher.on_sample(HOME, SAMPLE)
    clock[0] += timedelta(seconds=31)

    with pytest.raises(StaleDataError):
        watcher.publish_once()
    watcher.publisher.publish_snapshot.assert_not_called()


class IdleClient:
    """A Tibber client that cannot fetch and whose live feeds never send anything."""

    def __init__(self):
        self.subscribed = []
        self.cancelled = []

    async def fetch_month_to_date(self, site, now):
        raise TibberError("Network error connecting to Tibber")

    async def subscribe_realtime(self, site, on_sample):
        self.subscribed.append(site.name)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled.append(site.name)
            raise


def test_run_stops_all_tasks_when_data_goes_stale(clock):
    client = IdleClient()
    publisher = MagicMock()
    aggregator = UsageAggregator(SITES, client, clock=lambda: clock[0])
    watcher = PowerWatcher(
        Settings(tibber_key="token", sites=SITES, publish_interval=0.01),
        client=client,
        publisher=publisher,
        aggregator=aggregator,
    )
    # No sample has arrived since startup
    clock[0] += timedelta(seconds=31)

    with pytest.raises(StaleDataError):
        asyncio.run(watcher.run())

    assert client.subscribed == ["home"]
    assert client.cancelled == ["home"]
    publisher.connect.assert_called_once()
    publisher.disconnect.assert_called_once()
    publisher.publish_snapshot.assert_not_called()
