"""Data models for sites, usage, prices and realtime status."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


@dataclass(frozen=True)
class Site:
    """A monitored location with its own Tibber home id."""

    name: str
    external_id: str
    support_eligible: bool = True
    bursty_production: bool = False  # production is only reported intermittently


@dataclass(frozen=True)
class SiteRegistry:
    """Lookup of sites by logical name and by Tibber home id."""

    by_name: dict[str, Site]
    by_external_id: dict[str, Site]

    @classmethod
    def from_sites(cls, sites: list[Site]) -> "SiteRegistry":
        return cls(
            by_name={s.name: s for s in sites},
            by_external_id={s.external_id: s for s in sites},
        )

    def __iter__(self):
        return iter(self.by_name.values())

    def __len__(self) -> int:
        return len(self.by_name)

    def get(self, name: str) -> Site:
        """Get a site by name, raising KeyError with the known names."""
        try:
            return self.by_name[name]
        except KeyError:
            known = ", ".join(sorted(self.by_name))
            raise KeyError(f"Unknown site '{name}' (known: {known})") from None


@dataclass(frozen=True)
class ConsumptionRecord:
    """One hour of metered consumption."""

    period_start: datetime
    period_end: datetime
    consumption_kwh: float
    raw_unit_price: float


@dataclass(frozen=True)
class SpotPriceRecord:
    """Spot price for one hour, energy and tax parts in currency/kWh."""

    hour_start: datetime
    energy: float
    tax: float


@dataclass(frozen=True)
class UsageAndPrices:
    """Result of a month-to-date fetch for one site."""

    consumption: list[ConsumptionRecord]
    prices: list[SpotPriceRecord]


@dataclass(frozen=True)
class EffectivePrice:
    """Price components for one hour after fees and support."""

    energy: float
    tax: float
    transport_cost: float
    energy_after_support: float  # energy plus tax minus support
    total_after_support: float  # what we actually pay per kWh


ZERO_PRICE = EffectivePrice(0.0, 0.0, 0.0, 0.0, 0.0)


@dataclass(frozen=True)
class HourlyUsage:
    """Consumption and cost for one elapsed hour of the day."""

    consumption: float
    energy_cost: float
    transport_cost: float
    total_cost: float


@dataclass
class Accumulated:
    consumption: float = 0.0
    production: float = 0.0
    cost: float = 0.0


class SiteState(Enum):
    UNINITIALIZED = "uninitialized"
    POPULATED = "populated"


@dataclass
class SiteStatus:
    """Current status for a site, as published to the broker."""

    power: float = 0.0  # watts, negative when producing
    day: Accumulated = field(default_factory=Accumulated)
    month: Accumulated = field(default_factory=Accumulated)
    min_power: float = 0.0
    average_power: float = 0.0
    max_power: float = 0.0
    accumulated_reward: float = 0.0
    power_production: float = 0.0
    min_power_production: float = 0.0
    max_power_production: float = 0.0
    usage_for_day: dict[int, HourlyUsage] = field(default_factory=dict)
    usage_today_up_to_this_hour: float = 0.0
    last_hour_seen: int = 0
    prices: dict[int, EffectivePrice] = field(default_factory=dict)
    current_price: EffectivePrice = ZERO_PRICE


@dataclass(frozen=True)
class Reading:
    value: float


@dataclass(frozen=True)
class NoReading:
    pass


ProductionReading = Reading | NoReading


def reading_from(value: float | None) -> ProductionReading:
    """Wrap a nullable telemetry value."""
    return NoReading() if value is None else Reading(value)


class RealtimeSample(BaseModel):
    """A realtime measurement pushed by the Tibber live feed.

    Field names follow the feed's camelCase keys. Production related
    fields may be null but must be present.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, strict=True, frozen=True
    )

    timestamp: str
    power: float
    accumulated_consumption: float
    accumulated_production: float
    accumulated_cost: float | None
    min_power: float
    average_power: float
    max_power: float
    accumulated_reward: float | None
    power_production: float | None
    min_power_production: float | None
    max_power_production: float | None

    @property
    def production(self) -> ProductionReading:
        return reading_from(self.power_production)


def price_to_dict(price: EffectivePrice) -> dict:
    return {
        "energy": price.energy,
        "tax": price.tax,
        "transportCost": price.transport_cost,
        "energyAfterSupport": price.energy_after_support,
        "totalAfterSupport": price.total_after_support,
    }


def status_to_dict(status: SiteStatus) -> dict:
    """Convert a status to the JSON document consumed by dashboards."""

    def accumulated(acc: Accumulated) -> dict:
        return {
            "accumulatedConsumption": acc.consumption,
            "accumulatedProduction": acc.production,
            "accumulatedCost": acc.cost,
        }

    return {
        "power": status.power,
        "day": accumulated(status.day),
        "month": accumulated(status.month),
        "minPower": status.min_power,
        "averagePower": status.average_power,
        "maxPower": status.max_power,
        "accumulatedReward": status.accumulated_reward,
        "powerProduction": status.power_production,
        "minPowerProduction": status.min_power_production,
        "maxPowerProduction": status.max_power_production,
        "usageForDay": {
            str(hour): {
                "consumption": usage.consumption,
                "energyIncVat": usage.energy_cost,
                "transportIncVat": usage.transport_cost,
                "totalIncVat": usage.total_cost,
            }
            for hour, usage in sorted(status.usage_for_day.items())
        },
        "usageForTodayLastHourSeen": status.last_hour_seen,
        "usageForTodayUpToThisHour": status.usage_today_up_to_this_hour,
        "prices": {str(hour): price_to_dict(p) for hour, p in sorted(status.prices.items())},
        "currentPrice": price_to_dict(status.current_price),
    }
