"""Long running watcher: refresh, realtime feeds and publishing.

All work runs as tasks on one asyncio event loop. Each handler runs to
completion before the next is dispatched; the only suspension inside a
refresh is the network fetch.
"""

import asyncio
import logging
from typing import Any

from .aggregator import UsageAggregator
from .collectors.tibber import TibberClient
from .config import Settings
from .debug import start_debug_server
from .models import Site
from .publisher import MqttPublisher

logger = logging.getLogger(__name__)


class PowerWatcher:
    """Wires the Tibber client, the aggregator and the publisher together."""

    def __init__(
        self,
        settings: Settings,
        client: TibberClient | None = None,
        publisher: MqttPublisher | None = None,
        aggregator: UsageAggregator | None = None,
    ):
        if settings.mqtt is None and publisher is None:
            raise ValueError("PowerWatcher needs MQTT settings or a publisher")

        self.settings = settings
        self.client = client or TibberClient(settings.tibber_key, settings.api_url, settings.ws_url)
        self.publisher = publisher or MqttPublisher(settings.mqtt)
        self.aggregator = aggregator or UsageAggregator(
            settings.sites,
            self.client,
            tariff=settings.tariff,
            min_forward_interval=settings.min_forward_interval,
            max_sample_age=settings.max_sample_age,
        )

    def on_sample(self, site: Site, payload: dict[str, Any]) -> None:
        """Handle a live measurement; forward it if the rate limit allows."""
        if self.aggregator.ingest_realtime_sample(site, payload):
            self.publisher.publish_site(site.name, self.aggregator.status_for(site))

    def publish_once(self) -> None:
        """Publish the full snapshot. Raises StaleDataError if data is too old."""
        age = self.aggregator.seconds_since_last_sample()
        logger.info("Age of data %.0f seconds", age)
        self.aggregator.check_fresh()
        self.publisher.publish_snapshot(self.aggregator.snapshot())

    async def refresh_loop(self) -> None:
        while True:
            results = await self.aggregator.refresh_all()
            logger.info(
                "Tibber data refreshed: %s",
                ", ".join(f"{name}={'ok' if ok else 'failed'}" for name, ok in results.items()),
            )
            await asyncio.sleep(self.settings.refresh_interval)

    async def publish_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.publish_interval)
            self.publish_once()

    async def run(self) -> None:
        """Run until cancelled or until realtime data goes stale."""
        self.publisher.connect()
        runner = None
        if self.settings.debug_port:
            runner = await start_debug_server(self.aggregator, self.settings.debug_port)

        tasks = [
            asyncio.create_task(self.refresh_loop(), name="refresh"),
            asyncio.create_task(self.publish_loop(), name="publish"),
        ]
        for site in self.settings.sites:
            tasks.append(
                asyncio.create_task(
                    self.client.subscribe_realtime(site, self.on_sample), name=f"live-{site.name}"
                )
            )

        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if runner is not None:
                await runner.cleanup()
            self.publisher.disconnect()
