"""Tariff loading and effective price calculation.

Grid transport fees depend on season and on whether the hour is a
night/weekend hour. Electricity support (a subsidy) covers a share of the
price above an entry price, as long as the month's usage is below a cutoff.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, time
from pathlib import Path
from zoneinfo import ZoneInfo

import yaml

from .models import EffectivePrice, Site, SpotPriceRecord

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "tariff.yaml"


@dataclass(frozen=True)
class TransportRates:
    """Transport fee in currency/kWh for one season."""

    night_or_weekend: float
    day: float


@dataclass(frozen=True)
class TariffConfig:
    """Grid tariff and support settings."""

    winter: TransportRates = TransportRates(night_or_weekend=0.2895, day=0.352)
    summer: TransportRates = TransportRates(night_or_weekend=0.373, day=0.4355)
    winter_months: frozenset[int] = frozenset({1, 2, 3})
    night_start: str = "22:00"  # HH:MM format
    night_end: str = "06:00"  # HH:MM format, exclusive
    support_cutoff_kwh: float = 5000.0
    support_entry_price: float = 0.7
    support_rate: float = 0.9
    ineligible_usage_kwh: float = 999_999.0  # usage passed for sites without support
    timezone: str = "Europe/Oslo"

    def __post_init__(self):
        if self.ineligible_usage_kwh < self.support_cutoff_kwh:
            raise ValueError(
                f"ineligible_usage_kwh ({self.ineligible_usage_kwh}) must not be below "
                f"support cutoff_kwh ({self.support_cutoff_kwh})"
            )

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


DEFAULT_TARIFF = TariffConfig()


def load_tariff_from_yaml(config_path: Path | None = None) -> TariffConfig:
    """Load tariff settings from YAML config file.

    A missing default config file gives the built-in defaults.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    if config_path is None and not path.exists():
        logger.debug("No tariff config at %s, using defaults", path)
        return DEFAULT_TARIFF

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    transport = data.get("transport", {})
    rates = transport.get("rates", {})
    support = data.get("support", {})
    night = transport.get("night", {})

    def season(name: str, default: TransportRates) -> TransportRates:
        r = rates.get(name, {})
        return TransportRates(
            night_or_weekend=float(r.get("night_or_weekend", default.night_or_weekend)),
            day=float(r.get("day", default.day)),
        )

    timezone = data.get("timezone", DEFAULT_TARIFF.timezone)
    months = transport.get("winter_months", sorted(DEFAULT_TARIFF.winter_months))
    if any(not 1 <= int(m) <= 12 for m in months):
        raise ValueError(f"winter_months must be between 1 and 12, got {months}")

    rate = float(support.get("rate", DEFAULT_TARIFF.support_rate))
    if not 0 <= rate <= 1:
        raise ValueError(f"support rate must be between 0 and 1, got {rate}")

    return TariffConfig(
        winter=season("winter", DEFAULT_TARIFF.winter),
        summer=season("summer", DEFAULT_TARIFF.summer),
        winter_months=frozenset(int(m) for m in months),
        night_start=night.get("start", DEFAULT_TARIFF.night_start),
        night_end=night.get("end", DEFAULT_TARIFF.night_end),
        support_cutoff_kwh=float(support.get("cutoff_kwh", DEFAULT_TARIFF.support_cutoff_kwh)),
        support_entry_price=float(support.get("entry_price", DEFAULT_TARIFF.support_entry_price)),
        support_rate=rate,
        ineligible_usage_kwh=float(
            support.get("ineligible_usage_kwh", DEFAULT_TARIFF.ineligible_usage_kwh)
        ),
        timezone=str(ZoneInfo(timezone)),
    )


def parse_time(time_str: str) -> time:
    """Parse HH:MM string to time object."""
    parts = time_str.split(":")
    return time(int(parts[0]), int(parts[1]))


def time_in_range(check_time: time, start: time, end: time) -> bool:
    """Check if a time falls within a range (handles overnight ranges)."""
    if start <= end:
        return start <= check_time < end
    else:
        # Overnight range (e.g., 22:00 to 06:00)
        return check_time >= start or check_time < end


def to_local(when: datetime, tariff: TariffConfig = DEFAULT_TARIFF) -> datetime:
    """Convert to the billing time zone. Naive datetimes are already local."""
    if when.tzinfo is None:
        return when
    return when.astimezone(tariff.zone)


def is_winter(when: datetime, tariff: TariffConfig = DEFAULT_TARIFF) -> bool:
    return to_local(when, tariff).month in tariff.winter_months


def is_night_or_weekend(when: datetime, tariff: TariffConfig = DEFAULT_TARIFF) -> bool:
    local = to_local(when, tariff)
    if local.weekday() >= 5:
        return True
    # Night rate applies to whole hours
    hour_start = time(local.hour, 0)
    return time_in_range(hour_start, parse_time(tariff.night_start), parse_time(tariff.night_end))


def transport_cost_for(when: datetime, tariff: TariffConfig = DEFAULT_TARIFF) -> float:
    """Get the grid transport fee in currency/kWh for a specific time."""
    rates = tariff.winter if is_winter(when, tariff) else tariff.summer
    if is_night_or_weekend(when, tariff):
        return rates.night_or_weekend
    return rates.day


def apply_support(
    raw_price: float, month_to_date_kwh: float, tariff: TariffConfig = DEFAULT_TARIFF
) -> float:
    """Get the price after electricity support.

    Support is paid on the part of the price above the entry price, as long
    as usage this month is below the cutoff.
    """
    support = 0.0
    if month_to_date_kwh < tariff.support_cutoff_kwh and raw_price > tariff.support_entry_price:
        support = (raw_price - tariff.support_entry_price) * tariff.support_rate
        support = min(max(0.0, support), raw_price)

    logger.debug(
        "price=%.4f support=%.4f used=%.0f after=%.4f",
        raw_price,
        support,
        month_to_date_kwh,
        raw_price - support,
    )
    return raw_price - support


def current_full_price(
    spot_price: float,
    when: datetime,
    month_to_date_kwh: float = 0,
    tariff: TariffConfig = DEFAULT_TARIFF,
) -> float:
    """Get the all-in price: spot plus transport, minus support."""
    base = spot_price + transport_cost_for(when, tariff)
    return apply_support(base, month_to_date_kwh, tariff)


def support_usage_for(
    site: Site, month_to_date_kwh: float, tariff: TariffConfig = DEFAULT_TARIFF
) -> float:
    """Usage to test support eligibility with. Ineligible sites never qualify."""
    if not site.support_eligible:
        return tariff.ineligible_usage_kwh
    return month_to_date_kwh


def effective_price(
    record: SpotPriceRecord, month_to_date_kwh: float, tariff: TariffConfig = DEFAULT_TARIFF
) -> EffectivePrice:
    """Calculate the price components for the hour of a spot price record."""
    transport = transport_cost_for(record.hour_start, tariff)
    energy_after_support = apply_support(record.energy, month_to_date_kwh, tariff) + record.tax
    return EffectivePrice(
        energy=record.energy,
        tax=record.tax,
        transport_cost=transport,
        energy_after_support=energy_after_support,
        total_after_support=energy_after_support + transport,
    )
