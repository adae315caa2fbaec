"""Tibber API client.

Fetches hourly consumption and today's prices through the GraphQL API, and
subscribes to live measurements over the graphql-transport-ws websocket.
"""

import asyncio
import logging
import random
from datetime import datetime
from typing import Any, Callable

import aiohttp
import httpx

from ..errors import TibberError
from ..models import ConsumptionRecord, Site, SpotPriceRecord, UsageAndPrices

logger = logging.getLogger(__name__)

USER_AGENT = "powerwatch/0.1"

USAGE_QUERY = """
query Usage($homeId: ID!, $hours: Int!) {
  viewer {
    home(id: $homeId) {
      id
      consumption(resolution: HOURLY, last: $hours) {
        nodes {
          from
          to
          unitPrice
          unitPriceVAT
          consumption
        }
      }
      currentSubscription {
        status
        priceInfo {
          today {
            total
            energy
            tax
            startsAt
          }
        }
      }
    }
  }
}
"""

WEBSOCKET_URL_QUERY = "{ viewer { websocketSubscriptionUrl } }"

LIVE_MEASUREMENT_SUBSCRIPTION = """
subscription Live($homeId: ID!) {
  liveMeasurement(homeId: $homeId) {
    timestamp
    power
    accumulatedConsumption
    accumulatedProduction
    accumulatedCost
    accumulatedReward
    minPower
    averagePower
    maxPower
    powerProduction
    minPowerProduction
    maxPowerProduction
  }
}
"""


def hours_to_fetch(now: datetime) -> int:
    """Hours to request to cover the month so far, with some slack."""
    return now.day * 24


def parse_consumption(nodes: list[dict[str, Any]]) -> list[ConsumptionRecord]:
    """Parse consumption nodes. Hours not yet metered have null consumption."""
    records = []
    for node in nodes:
        if node.get("consumption") is None:
            continue
        records.append(
            ConsumptionRecord(
                period_start=datetime.fromisoformat(node["from"]),
                period_end=datetime.fromisoformat(node["to"]),
                consumption_kwh=float(node["consumption"]),
                raw_unit_price=float(node.get("unitPrice") or 0.0),
            )
        )
    return records


def parse_prices(nodes: list[dict[str, Any]]) -> list[SpotPriceRecord]:
    return [
        SpotPriceRecord(
            hour_start=datetime.fromisoformat(node["startsAt"]),
            energy=float(node["energy"]),
            tax=float(node["tax"]),
        )
        for node in nodes
    ]


class TibberClient:
    """Client for the Tibber GraphQL API.

    Args:
        api_key: Personal access token
        api_url: GraphQL endpoint
        ws_url: Fallback websocket endpoint for live measurements
        timeout: Request timeout in seconds
        transport: Optional httpx transport (used by tests)
    """

    def __init__(
        self,
        api_key: str,
        api_url: str,
        ws_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.ws_url = ws_url
        self.timeout = timeout
        self.transport = transport
        self._websocket_url: str | None = None

    async def query(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a GraphQL query and return its data."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "User-Agent": USER_AGENT,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.api_url,
                    json={"query": query, "variables": variables or {}},
                    headers=headers,
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            raise TibberError(f"HTTP error from Tibber: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise TibberError(f"Network error connecting to Tibber: {e}") from e
        except ValueError as e:
            raise TibberError(f"Invalid response from Tibber: {e}") from e

        if payload.get("errors"):
            messages = "; ".join(err.get("message", "unknown") for err in payload["errors"])
            raise TibberError(f"Tibber API error: {messages}")
        return payload.get("data") or {}

    async def fetch_month_to_date(self, site: Site, now: datetime) -> UsageAndPrices:
        """Fetch hourly consumption for the month so far and today's prices."""
        data = await self.query(
            USAGE_QUERY, {"homeId": site.external_id, "hours": hours_to_fetch(now)}
        )
        home = (data.get("viewer") or {}).get("home")
        if not home:
            raise TibberError(f"Home {site.external_id} ({site.name}) not found")

        try:
            consumption = parse_consumption(home["consumption"]["nodes"])
            subscription = home.get("currentSubscription") or {}
            today = (subscription.get("priceInfo") or {}).get("today") or []
            prices = parse_prices(today)
        except (KeyError, TypeError, ValueError) as e:
            raise TibberError(f"Unexpected usage data for {site.name}: {e}") from e

        logger.debug(
            "%s: fetched %d consumption records and %d prices",
            site.name,
            len(consumption),
            len(prices),
        )
        return UsageAndPrices(consumption=consumption, prices=prices)

    async def websocket_url(self) -> str:
        if self._websocket_url is None:
            data = await self.query(WEBSOCKET_URL_QUERY)
            url = (data.get("viewer") or {}).get("websocketSubscriptionUrl")
            self._websocket_url = url or self.ws_url
        return self._websocket_url

    async def subscribe_realtime(
        self,
        site: Site,
        on_sample: Callable[[Site, dict[str, Any]], Any],
        reconnect_delay: float = 10.0,
    ) -> None:
        """Stream live measurements for a site until cancelled.

        Reconnects after a fixed delay when the connection drops.
        """
        # Spread out connections to avoid hammering the API
        await asyncio.sleep(random.uniform(0, 5))
        while True:
            try:
                await self._stream_live_measurements(site, on_sample)
                logger.warning("Live feed for %s completed, reconnecting", site.name)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, TibberError) as e:
                logger.warning("Live feed for %s failed: %s", site.name, e)
            await asyncio.sleep(reconnect_delay)

    async def _stream_live_measurements(
        self, site: Site, on_sample: Callable[[Site, dict[str, Any]], Any]
    ) -> None:
        url = await self.websocket_url()
        async with aiohttp.ClientSession(headers={"User-Agent": USER_AGENT}) as session:
            async with session.ws_connect(
                url, protocols=("graphql-transport-ws",), heartbeat=30
            ) as ws:
                await ws.send_json({"type": "connection_init", "payload": {"token": self.api_key}})
                logger.info("Tibber %s live feed connecting", site.name)

                async for msg in ws:
                    if msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                        break
                    if msg.type != aiohttp.WSMsgType.TEXT:
                        continue

                    message = msg.json()
                    kind = message.get("type")
                    if kind == "connection_ack":
                        await ws.send_json({
                            "id": site.external_id,
                            "type": "subscribe",
                            "payload": {
                                "query": LIVE_MEASUREMENT_SUBSCRIPTION,
                                "variables": {"homeId": site.external_id},
                            },
                        })
                        logger.info("Tibber %s live feed initiated", site.name)
                    elif kind == "next":
                        data = (message.get("payload") or {}).get("data") or {}
                        measurement = data.get("liveMeasurement")
                        if measurement is not None:
                            on_sample(site, measurement)
                    elif kind == "ping":
                        await ws.send_json({"type": "pong"})
                    elif kind == "error":
                        raise TibberError(f"Live feed error: {message.get('payload')}")
                    elif kind == "complete":
                        return
