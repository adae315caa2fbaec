"""Usage and cost aggregation per site.

Combines hourly consumption, today's spot prices and realtime telemetry
into one SiteStatus per site. A refresh builds the new status in local
variables and swaps it in with a single assignment, so realtime ingestion
running while a fetch is in flight never sees a half updated price table.
"""

import copy
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Callable, Mapping, Protocol

from pydantic import ValidationError

from .errors import StaleDataError, TibberError
from .models import (
    Accumulated,
    ConsumptionRecord,
    EffectivePrice,
    HourlyUsage,
    RealtimeSample,
    Reading,
    Site,
    SiteRegistry,
    SiteState,
    SiteStatus,
    UsageAndPrices,
    reading_from,
)
from .tariffs import DEFAULT_TARIFF, TariffConfig, effective_price, support_usage_for, to_local

logger = logging.getLogger(__name__)


class MeteringClient(Protocol):
    async def fetch_month_to_date(self, site: Site, now: datetime) -> UsageAndPrices: ...


def usage_for_period(records: list[ConsumptionRecord], start: datetime, end: datetime) -> float:
    """Sum consumption for records starting within [start, end]."""
    return sum(r.consumption_kwh for r in records if start <= r.period_start <= end)


class UsageAggregator:
    """Owns the status of every site.

    Args:
        sites: Sites to track
        client: Metering client used by refreshes
        tariff: Tariff settings for price calculation
        min_forward_interval: Minimum seconds between forwarded realtime updates per site
        max_sample_age: Seconds without a realtime sample before data is stale
        clock: Returns the current time (timezone aware)
    """

    def __init__(
        self,
        sites: SiteRegistry,
        client: MeteringClient | None = None,
        tariff: TariffConfig = DEFAULT_TARIFF,
        min_forward_interval: float = 15.0,
        max_sample_age: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.sites = sites
        self.client = client
        self.tariff = tariff
        self.min_forward_interval = timedelta(seconds=min_forward_interval)
        self.max_sample_age = max_sample_age
        self._clock = clock or (lambda: datetime.now(tariff.zone))

        self._status: dict[str, SiteStatus] = {s.name: SiteStatus() for s in sites}
        self._state: dict[str, SiteState] = {s.name: SiteState.UNINITIALIZED for s in sites}
        self._last_production_power: dict[str, float] = {s.name: 0.0 for s in sites}
        self._last_forwarded: dict[str, datetime | None] = {s.name: None for s in sites}
        self._last_sample_at: datetime | None = None
        self._started_at = self._now()

    def _now(self, now: datetime | None = None) -> datetime:
        now = now or self._clock()
        if now.tzinfo is None:
            return now.replace(tzinfo=self.tariff.zone)
        return to_local(now, self.tariff)

    def state(self, site: Site) -> SiteState:
        return self._state[site.name]

    def last_forwarded(self, site: Site) -> datetime | None:
        return self._last_forwarded[site.name]

    # Batch refresh

    async def refresh_usage_and_prices(self, site: Site, now: datetime | None = None) -> bool:
        """Fetch month-to-date usage and today's prices and rebuild the site status.

        Returns False if the fetch or the calculation failed, in which case
        the previous status is kept unchanged.
        """
        if self.client is None:
            raise RuntimeError("UsageAggregator has no metering client")

        now = self._now(now)
        try:
            data = await self.client.fetch_month_to_date(site, now)
        except TibberError as e:
            logger.error("Failed to fetch usage for %s: %s", site.name, e)
            return False

        # The status may have changed while waiting for the fetch
        try:
            status = self.build_status(site, data, self._status[site.name], now)
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Failed to calculate usage for %s: %s", site.name, e)
            return False

        self._status[site.name] = status
        self._state[site.name] = SiteState.POPULATED
        return True

    async def refresh_all(self, now: datetime | None = None) -> dict[str, bool]:
        """Refresh every site in turn. Returns success per site name."""
        results = {}
        for site in self.sites:
            results[site.name] = await self.refresh_usage_and_prices(site, now)
        return results

    def build_status(
        self, site: Site, data: UsageAndPrices, current: SiteStatus, now: datetime
    ) -> SiteStatus:
        """Build a new status from fetched data. Does not touch live state."""
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        hour_start = now.replace(minute=0, second=0, microsecond=0)

        # Sum first, round once
        month_so_far = round(usage_for_period(data.consumption, month_start, now))
        today_so_far = usage_for_period(data.consumption, day_start, hour_start)
        month_cost = sum(
            r.consumption_kwh * r.raw_unit_price
            for r in data.consumption
            if month_start <= r.period_start <= now
        )
        logger.info("%s: %d kWh used this month so far", site.name, month_so_far)

        usage_for_support = support_usage_for(site, month_so_far, self.tariff)
        prices: dict[int, EffectivePrice] = {}
        for record in data.prices:
            local = to_local(record.hour_start, self.tariff)
            if local.date() != now.date():
                continue
            prices[local.hour] = effective_price(record, usage_for_support, self.tariff)

        usage_for_day: dict[int, HourlyUsage] = {}
        for record in data.consumption:
            local = to_local(record.period_start, self.tariff)
            if local.date() != now.date():
                continue
            price = prices.get(local.hour)
            if price is None:
                logger.warning("%s: no price for hour %d, skipping its cost", site.name, local.hour)
                continue
            energy_cost = price.energy_after_support * record.consumption_kwh
            transport_cost = price.transport_cost * record.consumption_kwh
            usage_for_day[local.hour] = HourlyUsage(
                consumption=record.consumption_kwh,
                energy_cost=energy_cost,
                transport_cost=transport_cost,
                total_cost=energy_cost + transport_cost,
            )

        current_price = prices.get(now.hour)
        if current_price is None:
            logger.warning("%s: no price for current hour %d", site.name, now.hour)
            current_price = current.current_price

        return replace(
            current,
            day=Accumulated(
                consumption=current.day.consumption,
                production=current.day.production,
                cost=sum(u.total_cost for u in usage_for_day.values()),
            ),
            month=Accumulated(
                consumption=month_so_far,
                production=current.month.production,
                cost=month_cost,
            ),
            prices=prices,
            usage_for_day=usage_for_day,
            usage_today_up_to_this_hour=today_so_far,
            last_hour_seen=max(usage_for_day, default=0),
            current_price=current_price,
        )

    # Realtime ingestion

    def ingest_realtime_sample(
        self, site: Site, payload: Mapping[str, Any] | RealtimeSample, now: datetime | None = None
    ) -> bool:
        """Fold a realtime sample into the site status.

        Invalid samples are logged and dropped. Returns True if this update
        may be forwarded, i.e. the site has not been forwarded within the
        minimum interval.
        """
        try:
            if isinstance(payload, RealtimeSample):
                sample = payload
            else:
                sample = RealtimeSample.model_validate(payload)
        except ValidationError as e:
            logger.warning("Dropping invalid realtime sample for %s: %s", site.name, e)
            return False

        now = self._now(now)
        status = self._status[site.name]

        power = sample.power
        if site.bursty_production and sample.power == 0:
            # Production is reported in bursts, so remember the last value
            production = sample.production
            if isinstance(production, Reading):
                power = -production.value
                self._last_production_power[site.name] = power
            else:
                power = self._last_production_power[site.name]

        status.power = power
        status.min_power = sample.min_power
        status.average_power = sample.average_power
        status.max_power = sample.max_power
        for name in ("power_production", "min_power_production", "max_power_production"):
            reading = reading_from(getattr(sample, name))
            if isinstance(reading, Reading):
                setattr(status, name, reading.value)
        if sample.accumulated_reward is not None:
            status.accumulated_reward = sample.accumulated_reward

        status.day.consumption = sample.accumulated_consumption - sample.accumulated_production
        status.day.production = sample.accumulated_production
        if self._state[site.name] is SiteState.POPULATED:
            status.day.cost = self.estimate_day_cost(site, sample.accumulated_consumption)

        self._last_sample_at = now
        logger.debug("%s: power %.0f W, today %.3f kWh", site.name, power, status.day.consumption)

        last = self._last_forwarded[site.name]
        if last is None or now - last >= self.min_forward_interval:
            self._last_forwarded[site.name] = now
            return True
        return False

    def estimate_day_cost(self, site: Site, accumulated_consumption: float) -> float:
        """Estimate today's cost so far.

        Settled hours are priced exactly; consumption the hourly data does
        not cover yet is priced at the current hour's rate. Not exact.
        """
        status = self._status[site.name]
        settled = sum(u.total_cost for u in status.usage_for_day.values())
        unaccounted = max(0.0, accumulated_consumption - status.usage_today_up_to_this_hour)
        return settled + unaccounted * status.current_price.total_after_support

    # Read access

    def snapshot(self) -> Mapping[str, SiteStatus]:
        """Read-only copy of the status of every site."""
        return MappingProxyType(copy.deepcopy(self._status))

    def status_for(self, site: Site) -> SiteStatus:
        return copy.deepcopy(self._status[site.name])

    def seconds_since_last_sample(self, now: datetime | None = None) -> float:
        """Age of the newest accepted realtime sample (or of startup if none)."""
        since = self._last_sample_at or self._started_at
        return (self._now(now) - since).total_seconds()

    def is_stale(self, now: datetime | None = None) -> bool:
        return self.seconds_since_last_sample(now) > self.max_sample_age

    def check_fresh(self, now: datetime | None = None) -> None:
        """Raise StaleDataError if realtime data is too old."""
        age = self.seconds_since_last_sample(now)
        if age > self.max_sample_age:
            raise StaleDataError(age, self.max_sample_age)
