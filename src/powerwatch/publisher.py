"""MQTT publishing of site status."""

import json
import logging
import secrets
from typing import Mapping

import paho.mqtt.client as mqtt

from .config import MqttSettings
from .models import SiteStatus, status_to_dict

logger = logging.getLogger(__name__)


class MqttPublisher:
    """Fire-and-forget publisher under a root topic."""

    def __init__(self, settings: MqttSettings, client: mqtt.Client | None = None):
        self.settings = settings
        self.client_id = f"powerwatch-{secrets.token_hex(3)}"
        self.client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id
        )

        if settings.username:
            self.client.username_pw_set(settings.username, settings.password)
        if settings.tls:
            self.client.tls_set()
            # Local brokers usually have self-signed certificates
            self.client.tls_insecure_set(True)

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect

    def connect(self) -> None:
        """Connect in the background. paho reconnects on its own."""
        logger.info("%s connecting to %s:%d", self.client_id, self.settings.host, self.settings.port)
        self.client.connect_async(self.settings.host, self.settings.port)
        self.client.loop_start()

    def disconnect(self) -> None:
        self.client.disconnect()
        self.client.loop_stop()

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            logger.error("MQTT connection to %s failed: %s", self.settings.host, reason_code)
        else:
            logger.info("%s connected to %s", self.client_id, self.settings.host)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        logger.warning("MQTT disconnected from %s: %s", self.settings.host, reason_code)

    def topic(self, topic: str) -> str:
        return f"{self.settings.root_topic}/{topic}"

    def publish(self, topic: str, message: str | float | None) -> None:
        """Publish a message. None is skipped."""
        if message is None:
            return
        full_topic = self.topic(topic)
        self.client.publish(full_topic, str(message))
        logger.debug("Published to %s", full_topic)

    def publish_snapshot(self, snapshot: Mapping[str, SiteStatus]) -> None:
        """Publish the status of every site as one JSON document."""
        document = {name: status_to_dict(status) for name, status in snapshot.items()}
        self.publish("power", json.dumps(document))

    def publish_site(self, name: str, status: SiteStatus) -> None:
        self.publish(f"power/{name}", json.dumps(status_to_dict(status)))
