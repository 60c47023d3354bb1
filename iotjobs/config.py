"""Settings for the jobs demo, read from a mapping of environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_BROKER_PORT = 8883
ALPN_BROKER_PORT = 443
ALPN_PROTOCOL_NAME = "x-amzn-mqtt-ca"

_ENV_CLIENT_IDENTIFIER = "CONFIG_MQTT_CLIENT_IDENTIFIER"
_ENV_BROKER_ENDPOINT = "CONFIG_MQTT_BROKER_ENDPOINT"
_ENV_BROKER_PORT = "CONFIG_MQTT_BROKER_PORT"
_ENV_THING_NAME = "CONFIG_THING_NAME"
_ENV_PLATFORM = "CONFIG_HARDWARE_PLATFORM_NAME"
_ENV_ROOT_CA = "CONFIG_ROOT_CA_PATH"
_ENV_CLIENT_CERT = "CONFIG_CLIENT_CERT_PATH"
_ENV_CLIENT_KEY = "CONFIG_CLIENT_KEY_PATH"


@dataclass(frozen=True)
class DemoConfig:
    """Connection and identity settings for one demo run.

    ``thing_name`` falls back to ``client_identifier`` when left empty.
    """

    client_identifier: str
    broker_endpoint: str
    broker_port: int = DEFAULT_BROKER_PORT
    thing_name: str = ""
    hardware_platform_name: str = "unknown"
    os_name: str = "FreeRTOS"
    os_version: str = "V10.3.0"
    mqtt_lib: str = "core-mqtt@1.0.0"
    root_ca_path: str | None = None
    client_cert_path: str | None = None
    client_key_path: str | None = None
    log_name: str = "JobsDemo"

    def __post_init__(self) -> None:
        if not self.client_identifier:
            raise ValueError("client identifier must not be empty")
        if not self.broker_endpoint:
            raise ValueError("broker endpoint must not be empty")
        if isinstance(self.broker_port, bool) or not isinstance(self.broker_port, int):
            raise ValueError(f"broker port must be an integer, got {self.broker_port!r}")
        if not 0 < self.broker_port < 65536:
            raise ValueError(f"broker port out of range: {self.broker_port}")
        if not self.thing_name:
            object.__setattr__(self, "thing_name", self.client_identifier)

    @property
    def uses_alpn(self) -> bool:
        """Whether the broker port requires the ALPN protocol name."""
        return self.broker_port == ALPN_BROKER_PORT

    @property
    def alpn_protocols(self) -> list[str]:
        """ALPN protocols to offer during the TLS handshake."""
        return [ALPN_PROTOCOL_NAME] if self.uses_alpn else []

    def metrics_string(self) -> str:
        """The metrics string sent as the MQTT user name."""
        return (
            f"?SDK={self.os_name}&Version={self.os_version}"
            f"&Platform={self.hardware_platform_name}&MQTTLib={self.mqtt_lib}"
        )


def _required(environ: Mapping[str, str], key: str) -> str:
    value = environ.get(key, "").strip()
    if not value:
        raise ValueError(f"missing required setting {key}")
    return value


def _optional(environ: Mapping[str, str], key: str) -> str | None:
    value = environ.get(key, "").strip()
    return value or None


def load_config(environ: Mapping[str, str] | None = None) -> DemoConfig:
    """Build a :class:`DemoConfig` from environment-style settings.

    Raises ValueError when a required setting is missing or malformed.
    """
    if environ is None:
        environ = os.environ

    port_text = environ.get(_ENV_BROKER_PORT, "").strip()
    if port_text:
        try:
            port = int(port_text)
        except ValueError:
            raise ValueError(f"{_ENV_BROKER_PORT} is not a number: {port_text!r}") from None
    else:
        port = DEFAULT_BROKER_PORT

    extra: dict[str, str] = {}
    platform_name = _optional(environ, _ENV_PLATFORM)
    if platform_name is not None:
        extra["hardware_platform_name"] = platform_name

    return DemoConfig(
        client_identifier=_required(environ, _ENV_CLIENT_IDENTIFIER),
        broker_endpoint=_required(environ, _ENV_BROKER_ENDPOINT),
        broker_port=port,
        thing_name=_optional(environ, _ENV_THING_NAME) or "",
        root_ca_path=_optional(environ, _ENV_ROOT_CA),
        client_cert_path=_optional(environ, _ENV_CLIENT_CERT),
        client_key_path=_optional(environ, _ENV_CLIENT_KEY),
        **extra,
    )