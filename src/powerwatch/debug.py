"""Optional HTTP endpoint exposing the current status for debugging."""

import logging

from aiohttp import web

from .aggregator import UsageAggregator
from .models import status_to_dict

logger = logging.getLogger(__name__)

AGGREGATOR = web.AppKey("aggregator", UsageAggregator)


async def get_status(request: web.Request) -> web.Response:
    aggregator = request.app[AGGREGATOR]
    snapshot = aggregator.snapshot()
    return web.json_response({name: status_to_dict(s) for name, s in snapshot.items()})


async def get_health(request: web.Request) -> web.Response:
    aggregator = request.app[AGGREGATOR]
    return web.json_response({
        "ageOfData": round(aggregator.seconds_since_last_sample(), 1),
        "maxAge": aggregator.max_sample_age,
        "stale": aggregator.is_stale(),
        "sites": {site.name: aggregator.state(site).value for site in aggregator.sites},
    })


def create_app(aggregator: UsageAggregator) -> web.Application:
    app = web.Application()
    app[AGGREGATOR] = aggregator
    app.router.add_get("/status", get_status)
    app.router.add_get("/health", get_health)
    return app


async def start_debug_server(aggregator: UsageAggregator, port: int) -> web.AppRunner:
    """Serve the debug endpoint. Call cleanup() on the returned runner to stop."""
    runner = web.AppRunner(create_app(aggregator))
    await runner.setup()
    await web.TCPSite(runner, "0.0.0.0", port).start()
    logger.info("Debug endpoint listening on port %d", port)
    return runner
