"""
Sample publishers for the polling daemon.

MqttPublisher sends every measurement to ``<topic>/<label>`` plus an optional
batched JSON document on ``<topic>/JSON``; StdoutPublisher prints samples.
The MQTT connection is described by a YAML document loaded into MqttConfig.
"""

import json
import random
import string
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, TextIO, Union
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from sdm72.codec import format_float32
from sdm72.config import parse_duration
from sdm72.exceptions import ConfigError, PublishError
from sdm72.logger import get_logger
from sdm72.protocol import ReadAllResult

logger = get_logger(__name__)

DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883}

LEGACY_KEYS = {
    "uri": "url",
    "oparation_timeout": "timeout",
    "auto_reconnect_interval_min": "reconnect_min_delay",
    "auto_reconnect_interval_max": "reconnect_max_delay",
}


def _default_client_id() -> str:
    suffix = "".join(random.choices(string.ascii_letters + string.digits, k=8))
    return f"sdm72-{suffix}"


class MqttConfig(BaseModel):
    """MQTT connection settings as stored in the YAML configuration document."""

    url: str = Field(..., description="Broker URL, e.g. mqtt://localhost:1883")
    username: Optional[str] = None
    password: Optional[str] = None
    topic: str = Field(default="sdm72", min_length=1, description="Topic prefix")
    qos: int = Field(default=0, ge=0, le=2)
    retain: bool = False
    json_payload: bool = Field(default=True, alias="json")
    client_id: str = Field(default_factory=_default_client_id)
    keep_alive_interval: float = Field(default=30.0, gt=0)
    timeout: float = Field(default=5.0, gt=0)
    reconnect_min_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)

    model_config = {"populate_by_name": True, "extra": "forbid"}

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_keys(cls, data):
        """Key names of the older ``mqtt.yaml`` layout are read as their current equivalents."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for legacy, key in LEGACY_KEYS.items():
            if legacy in data and key not in data:
                data[key] = data.pop(legacy)
        return data

    @field_validator("keep_alive_interval", "timeout", "reconnect_min_delay", "reconnect_max_delay",
                     mode="before")
    @classmethod
    def parse_durations(cls, v):
        try:
            return parse_duration(v)
        except ConfigError as e:
            raise ValueError(e.message) from e

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        parts = urlsplit(v)
        if parts.scheme not in DEFAULT_PORTS:
            raise ValueError(f"Unsupported MQTT URL scheme: {parts.scheme or v!r}")
        if not parts.hostname:
            raise ValueError(f"MQTT URL has no host: {v!r}")
        return v

    @field_validator("topic")
    @classmethod
    def strip_topic(cls, v: str) -> str:
        topic = v.strip("/")
        if not topic or "+" in topic or "#" in topic:
            raise ValueError(f"Invalid topic prefix: {v!r}")
        return topic

    @property
    def host(self) -> str:
        return urlsplit(self.url).hostname

    @property
    def port(self) -> int:
        parts = urlsplit(self.url)
        return parts.port or DEFAULT_PORTS[parts.scheme]

    @property
    def use_tls(self) -> bool:
        return urlsplit(self.url).scheme in ("mqtts", "ssl")

    @classmethod
    def load(cls, path: Union[str, Path]) -> "MqttConfig":
        """
        Load and validate the YAML configuration document.

        Raises:
            ConfigError: If the file is missing, not YAML, or fails validation
        """
        try:
            with open(path, encoding="utf-8") as f:
                document = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read MQTT config file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"MQTT config file {path} is not valid YAML: {e}") from e
        if not isinstance(document, dict):
            raise ConfigError(f"MQTT config file {path} must contain a mapping")
        try:
            return cls.model_validate(document)
        except ValidationError as e:
            raise ConfigError(f"Invalid MQTT config in {path}: {e}") from e


class Publisher(ABC):
    """
    Fans a sample out to per-measurement topics.

    Subclasses provide the raw ``publish``; ``publish_sample`` maps each
    measurement to ``<topic>/<label>`` and adds the JSON document.
    """

    def __init__(self, topic: str = "sdm72", json_payload: bool = True, retain: bool = False):
        self.topic = topic
        self.json_payload = json_payload
        self.retain = retain

    @abstractmethod
    def publish(self, topic: str, payload: str, retained: bool = False) -> None:
        """Deliver one message, raising PublishError on failure."""

    def publish_sample(self, sample: ReadAllResult) -> None:
        for measurement in sample:
            self.publish(
                f"{self.topic}/{measurement.descriptor.label}",
                format_float32(measurement.value),
                self.retain,
            )
        if self.json_payload:
            self.publish(f"{self.topic}/JSON", sample.to_json(), self.retain)

    def close(self) -> None:
        pass


class StdoutPublisher(Publisher):
    """Prints each sample, as JSON or as one ``caption: value`` line per measurement."""

    def __init__(self, json_payload: bool = True, stream: Optional[TextIO] = None):
        super().__init__(json_payload=json_payload)
        self.stream = stream or sys.stdout

    def publish(self, topic: str, payload: str, retained: bool = False) -> None:
        try:
            print(f"{topic} {payload}", file=self.stream, flush=True)
        except OSError as e:
            raise PublishError(f"Cannot write to stdout: {e}") from e

    def publish_sample(self, sample: ReadAllResult) -> None:
        text = sample.to_json() if self.json_payload else sample.text() + "\n"
        try:
            print(text, file=self.stream, flush=True)
        except OSError as e:
            raise PublishError(f"Cannot write to stdout: {e}") from e


class MqttPublisher(Publisher):
    """Publisher over a paho-mqtt client with its network loop on a background thread."""

    def __init__(self, config: MqttConfig, client: Optional[mqtt.Client] = None):
        super().__init__(topic=config.topic, json_payload=config.json_payload, retain=config.retain)
        self.config = config
        self.client = client or self._create_client(config)

    @staticmethod
    def _create_client(config: MqttConfig) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            clean_session=True,
            protocol=mqtt.MQTTv311,
        )
        if config.username is not None:
            client.username_pw_set(config.username, config.password)
        if config.use_tls:
            client.tls_set()
        client.connect_timeout = config.timeout
        client.reconnect_delay_set(
            min_delay=max(1, int(config.reconnect_min_delay)),
            max_delay=max(1, int(config.reconnect_max_delay)),
        )
        client.on_connect = _on_connect
        client.on_disconnect = _on_disconnect
        return client

    def connect(self) -> None:
        """Start connecting in the background; paho keeps reconnecting on its own."""
        logger.info(f"Connecting to MQTT broker at {self.config.host}:{self.config.port}")
        try:
            self.client.connect_async(
                self.config.host, self.config.port, keepalive=int(self.config.keep_alive_interval)
            )
        except (OSError, ValueError) as e:
            raise PublishError(f"Cannot connect to MQTT broker: {e}") from e
        self.client.loop_start()

    def publish(self, topic: str, payload: str, retained: bool = False) -> None:
        try:
            info = self.client.publish(topic, payload, qos=self.config.qos, retain=retained)
        except (OSError, ValueError) as e:
            raise PublishError(f"Cannot publish to {topic}: {e}") from e
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"Cannot publish to {topic}: {mqtt.error_string(info.rc)}")

    def close(self) -> None:
        self.client.disconnect()
        self.client.loop_stop()


def _on_connect(client, userdata, flags, reason_code, properties):
    if reason_code.is_failure:
        logger.warning(f"MQTT connection refused: {reason_code}")
    else:
        logger.info("Connected to MQTT broker")


def _on_disconnect(client, userdata, flags, reason_code, properties):
    logger.warning(f"Disconnected from MQTT broker: {reason_code}")
