"""Runtime settings read from the environment.

Settings are read once at startup into a Settings object that is passed to
the components that need it.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv

from .errors import ConfigError
from .models import Site, SiteRegistry
from .tariffs import DEFAULT_TARIFF, TariffConfig, load_tariff_from_yaml

TIBBER_API_URL = "https://api.tibber.com/v1-beta/gql"
TIBBER_WS_URL = "wss://websocket-api.tibber.com/v1-beta/gql/subscriptions"


@dataclass(frozen=True)
class MqttSettings:
    host: str
    port: int = 1883
    username: str | None = None
    password: str | None = None
    root_topic: str = "tibber"
    tls: bool = False


@dataclass(frozen=True)
class Settings:
    tibber_key: str
    sites: SiteRegistry
    tariff: TariffConfig = DEFAULT_TARIFF
    mqtt: MqttSettings | None = None
    api_url: str = TIBBER_API_URL
    ws_url: str = TIBBER_WS_URL
    refresh_interval: float = 300.0  # seconds between usage/price fetches
    publish_interval: float = 15.0  # seconds between broker publishes
    min_forward_interval: float = 15.0  # realtime forward rate limit per site
    max_sample_age: float = 30.0  # realtime data older than this is stale
    debug_port: int | None = None


def _required(env: Mapping[str, str], name: str, hint: str = "") -> str:
    value = env.get(name, "").strip()
    if not value:
        message = f"{name} environment variable not set."
        if hint:
            message += f"\n{hint}"
        raise ConfigError(message)
    return value


def _number(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got '{raw}'") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def parse_mqtt_settings(env: Mapping[str, str]) -> MqttSettings:
    """Build broker settings. MQTT_HOST may be a bare host or an mqtt:// URL."""
    host = _required(env, "MQTT_HOST", "Example: export MQTT_HOST='mqtt://192.168.1.10'")
    port = None
    tls = False
    if "://" in host:
        url = urlparse(host)
        tls = url.scheme in ("mqtts", "ssl")
        port = url.port
        host = url.hostname or ""
        if not host:
            raise ConfigError(f"MQTT_HOST has no host name: '{env['MQTT_HOST']}'")

    if env.get("MQTT_PORT"):
        port = int(_number(env, "MQTT_PORT", 1883))

    return MqttSettings(
        host=host,
        port=port or (8883 if tls else 1883),
        username=env.get("MQTT_USER") or None,
        password=env.get("MQTT_PASS") or None,
        root_topic=(env.get("MQTT_ROOT_TOPIC") or "tibber").strip("/"),
        tls=tls,
    )


def load_settings(env: Mapping[str, str] | None = None, require_mqtt: bool = True) -> Settings:
    """Read settings from the environment (and a .env file, if present).

    Raises ConfigError naming the first missing or invalid variable.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    key = _required(
        env,
        "TIBBER_KEY",
        "Get a personal access token from https://developer.tibber.com/settings/access-token",
    )
    home_id = _required(env, "TIBBER_ID_HOME")
    cabin_id = _required(env, "TIBBER_ID_CABIN")
    if home_id == cabin_id:
        raise ConfigError("TIBBER_ID_HOME and TIBBER_ID_CABIN must be different homes")

    sites = SiteRegistry.from_sites([
        Site(name="home", external_id=home_id),
        # Cabins get no electricity support and report production in bursts
        Site(name="cabin", external_id=cabin_id, support_eligible=False, bursty_production=True),
    ])

    tariff_path = env.get("POWERWATCH_TARIFF_CONFIG")
    try:
        tariff = load_tariff_from_yaml(Path(tariff_path) if tariff_path else None)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not load tariff config: {e}") from e

    debug_port = env.get("POWERWATCH_DEBUG_PORT")

    return Settings(
        tibber_key=key,
        sites=sites,
        tariff=tariff,
        mqtt=parse_mqtt_settings(env) if require_mqtt else None,
        api_url=env.get("TIBBER_API_URL") or TIBBER_API_URL,
        ws_url=env.get("TIBBER_WS_URL") or TIBBER_WS_URL,
        refresh_interval=_number(env, "POWERWATCH_REFRESH_INTERVAL", 300.0),
        publish_interval=_number(env, "POWERWATCH_PUBLISH_INTERVAL", 15.0),
        min_forward_interval=_number(env, "POWERWATCH_MIN_FORWARD_INTERVAL", 15.0),
        max_sample_age=_number(env, "POWERWATCH_MAX_SAMPLE_AGE", 30.0),
        debug_port=int(_number(env, "POWERWATCH_DEBUG_PORT", 0)) if debug_port else None,
    )
