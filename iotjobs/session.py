"""An MQTT session with the broker: connecting, subscribing and publishing at QoS 1."""

from __future__ import annotations

import logging
import ssl
import time
from collections.abc import Callable
from typing import Any

import paho.mqtt.client as mqtt

from iotjobs.config import DemoConfig
from iotjobs.publishes import (
    PACKET_ID_INVALID,
    QOS_AT_LEAST_ONCE,
    NoFreeSlotError,
    OutgoingPublishes,
    Payload,
)
from iotjobs.retry import BackoffPolicy, RetriesExhausted, retry_with_backoff

logger = logging.getLogger(__name__)

MQTT_PROCESS_LOOP_TIMEOUT_MS = 1500
CONNACK_RECV_TIMEOUT_MS = 1000
MQTT_KEEP_ALIVE_INTERVAL_SECONDS = 60

_SUCCESS = 0
_LOOP_SLICE_SECONDS = 0.1

MessageCallback = Callable[[str, bytes], Any]


class SessionError(RuntimeError):
    """An MQTT operation with the broker failed."""


def _code_value(code: Any) -> int:
    """Numeric value of a paho result or reason code."""
    return int(getattr(code, "value", code))


def _tls_context(config: DemoConfig) -> ssl.SSLContext:
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=config.root_ca_path)
    if config.client_cert_path:
        context.load_cert_chain(config.client_cert_path, config.client_key_path)
    if config.alpn_protocols:
        context.set_alpn_protocols(config.alpn_protocols)
    return context


def _build_client(config: DemoConfig) -> Any:
    api_version = getattr(mqtt, "CallbackAPIVersion", None)
    if api_version is not None:
        client = mqtt.Client(
            api_version.VERSION2, client_id=config.client_identifier, clean_session=False
        )
    else:
        client = mqtt.Client(client_id=config.client_identifier, clean_session=False)
    client.username_pw_set(config.metrics_string())
    client.tls_set_context(_tls_context(config))
    return client


class MqttSession:
    """One MQTT connection to the broker, with QoS 1 bookkeeping.

    Incoming publishes are passed to ``on_message(topic, payload)`` while
    the session processes network traffic. Acknowledgements are matched to
    the requests that asked for them.
    """

    def __init__(
        self,
        config: DemoConfig,
        on_message: MessageCallback,
        client: Any = None,
    ) -> None:
        self.config = config
        self._on_message_callback = on_message
        self.client = client if client is not None else _build_client(config)
        self.outgoing = OutgoingPublishes()
        self.retry_policy = BackoffPolicy()
        self.sleep: Callable[[float], object] = time.sleep
        self.ack_timeout = MQTT_PROCESS_LOOP_TIMEOUT_MS / 1000
        self.connack_timeout = CONNACK_RECV_TIMEOUT_MS / 1000
        self.subscribe_packet_id = PACKET_ID_INVALID
        self.unsubscribe_packet_id = PACKET_ID_INVALID
        self.last_ack_packet_id = PACKET_ID_INVALID
        self.established = False
        self._connack: tuple[int, bool] | None = None
        self._clock: Callable[[], float] = time.monotonic

        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_subscribe = self._on_subscribe
        self.client.on_unsubscribe = self._on_unsubscribe
        self.client.on_publish = self._on_publish

    def __enter__(self) -> MqttSession:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    # Callbacks from the MQTT client.

    def _on_connect(self, client: Any, userdata: Any, flags: Any, reason: Any, *rest: Any) -> None:
        if isinstance(flags, dict):
            session_present = bool(flags.get("session present", 0))
        else:
            session_present = bool(getattr(flags, "session_present", False))
        self._connack = (_code_value(reason), session_present)

    def _on_message(self, client: Any, userdata: Any, message: Any) -> None:
        self._on_message_callback(message.topic, bytes(message.payload or b""))

    def _on_subscribe(self, client: Any, userdata: Any, mid: int, *rest: Any) -> None:
        self.handle_ack("SUBACK", mid)

    def _on_unsubscribe(self, client: Any, userdata: Any, mid: int, *rest: Any) -> None:
        self.handle_ack("UNSUBACK", mid)

    def _on_publish(self, client: Any, userdata: Any, mid: int, *rest: Any) -> None:
        self.handle_ack("PUBACK", mid)

    # Session management.

    def connect(self) -> None:
        """Connect to the broker, retrying with back-off, and await CONNACK.

        Unacknowledged publishes are sent again when the broker resumes an
        earlier session and forgotten otherwise. Raises SessionError.
        """
        self.established = False
        self._connack = None
        host = self.config.broker_endpoint
        port = self.config.broker_port

        def attempt() -> None:
            logger.info("Establishing a TLS session to %s:%d.", host, port)
            self.client.connect(host, port, keepalive=MQTT_KEEP_ALIVE_INTERVAL_SECONDS)

        try:
            retry_with_backoff(attempt, self.retry_policy, sleep=self.sleep)
        except RetriesExhausted as error:
            logger.error("Failed to connect to MQTT broker %s.", host)
            raise SessionError(f"failed to connect to MQTT broker {host}") from error

        deadline = self._clock() + self.connack_timeout
        while self._connack is None and self._clock() < deadline:
            rc = _code_value(self.client.loop(timeout=self._slice(deadline)))
            if rc != _SUCCESS:
                break

        if self._connack is None or self._connack[0] != _SUCCESS:
            status = "no CONNACK" if self._connack is None else f"status {self._connack[0]}"
            logger.error("Connection with MQTT broker failed with %s.", status)
            self.client.disconnect()
            raise SessionError(f"connection with MQTT broker failed: {status}")

        logger.info("MQTT connection successfully established with broker.")
        self.established = True

        if self._connack[1]:
            logger.info("An MQTT session with broker is re-established. Resending unacked publishes.")
            self._resend_pending()
        else:
            logger.info(
                "A clean MQTT connection is established. Cleaning up all the stored outgoing publishes."
            )
            self.outgoing.clear()

    def _resend_pending(self) -> None:
        for entry in self.outgoing.pending():
            entry.dup = True
            logger.info("Sending duplicate PUBLISH with packet id %u.", entry.packet_id)
            info = self.client.publish(entry.topic, entry.payload, qos=entry.qos)
            rc = _code_value(info.rc)
            if rc != _SUCCESS:
                logger.error(
                    "Sending duplicate PUBLISH for packet id %u failed with status %u.",
                    entry.packet_id,
                    rc,
                )
                raise SessionError(f"resending publish {entry.packet_id} failed with status {rc}")
            entry.packet_id = info.mid
            logger.info("Sent duplicate PUBLISH successfully for packet id %u.", entry.packet_id)

    def disconnect(self) -> None:
        """Send DISCONNECT if a session was established. Raises SessionError."""
        if not self.established:
            return
        self.established = False
        rc = _code_value(self.client.disconnect())
        if rc != _SUCCESS:
            logger.error("Sending MQTT DISCONNECT failed with status=%u.", rc)
            raise SessionError(f"sending MQTT DISCONNECT failed with status {rc}")

    # Requests.

    def subscribe(self, topic: str) -> None:
        """Subscribe to ``topic`` at QoS 1 and wait for the SUBACK."""
        if not topic:
            raise ValueError("topic filter must not be empty")
        result, mid = self.client.subscribe(topic, qos=QOS_AT_LEAST_ONCE)
        rc = _code_value(result)
        if rc != _SUCCESS:
            logger.error("Failed to send SUBSCRIBE packet to broker with error = %u.", rc)
            raise SessionError(f"failed to send SUBSCRIBE for {topic} (status {rc})")
        self.subscribe_packet_id = mid
        logger.info("SUBSCRIBE topic %s to broker.", topic)
        self._wait_for_ack(mid, self.ack_timeout)

    def unsubscribe(self, topic: str) -> None:
        """Unsubscribe from ``topic`` and wait for the UNSUBACK."""
        if not topic:
            raise ValueError("topic filter must not be empty")
        result, mid = self.client.unsubscribe(topic)
        rc = _code_value(result)
        if rc != _SUCCESS:
            logger.error("Failed to send UNSUBSCRIBE packet to broker with error = %u.", rc)
            raise SessionError(f"failed to send UNSUBSCRIBE for {topic} (status {rc})")
        self.unsubscribe_packet_id = mid
        logger.info("UNSUBSCRIBE sent topic %s to broker.", topic)
        self._wait_for_ack(mid, self.ack_timeout)

    def publish(self, topic: str, payload: Payload = None) -> int:
        """Publish at QoS 1, keep it until acknowledged, and return its packet ID.

        Traffic is processed for the acknowledgement timeout afterwards; a
        failure there is only logged. Raises SessionError when the publish
        cannot be stored or sent.
        """
        if not topic:
            raise ValueError("topic must not be empty")
        if len(self.outgoing) >= self.outgoing.capacity:
            logger.error("Unable to find a free spot for outgoing PUBLISH message.")
            raise SessionError("no free slot for outgoing PUBLISH") from NoFreeSlotError()
        if payload is not None:
            logger.info("Published payload: %s", payload)

        info = self.client.publish(topic, payload, qos=QOS_AT_LEAST_ONCE)
        rc = _code_value(info.rc)
        if rc != _SUCCESS:
            logger.error("Failed to send PUBLISH packet to broker with error = %u.", rc)
            raise SessionError(f"failed to send PUBLISH to {topic} (status {rc})")
        self.outgoing.reserve(topic, payload, info.mid)
        logger.info("PUBLISH sent for topic %s to broker with packet ID %u.", topic, info.mid)

        try:
            self.process_loop(self.ack_timeout)
        except SessionError as error:
            logger.warning("MQTT process loop failed: %s", error)
        return info.mid

    # Network processing.

    def _slice(self, deadline: float) -> float:
        return max(0.0, min(_LOOP_SLICE_SECONDS, deadline - self._clock()))

    def process_loop(self, timeout: float | None = None) -> None:
        """Process network traffic once, or repeatedly for ``timeout`` seconds.

        Raises SessionError when the client reports a failure.
        """
        if timeout is None:
            rc = _code_value(self.client.loop(timeout=0.0))
            if rc != _SUCCESS:
                raise SessionError(f"MQTT process loop failed with status {rc}")
            return
        deadline = self._clock() + timeout
        while self._clock() < deadline:
            rc = _code_value(self.client.loop(timeout=self._slice(deadline)))
            if rc != _SUCCESS:
                raise SessionError(f"MQTT process loop failed with status {rc}")

    def _wait_for_ack(self, packet_id: int, timeout: float) -> None:
        self.last_ack_packet_id = PACKET_ID_INVALID
        start = self._clock()
        deadline = start + timeout
        rc = _SUCCESS
        while (
            self.last_ack_packet_id != packet_id
            and self._clock() < deadline
            and rc == _SUCCESS
        ):
            rc = _code_value(self.client.loop(timeout=self._slice(deadline)))
        if rc != _SUCCESS or self.last_ack_packet_id != packet_id:
            logger.error(
                "Process loop failed to receive ACK packet: Expected ACK Packet ID=%u, "
                "LoopDuration=%.3f s, Status=%d",
                packet_id,
                self._clock() - start,
                rc,
            )
            raise SessionError(f"no acknowledgement received for packet {packet_id}")

    def handle_ack(self, kind: str, packet_id: int) -> None:
        """Record an acknowledgement of ``kind`` (SUBACK, UNSUBACK, PUBACK or PINGRESP).

        Raises SessionError when a SUBACK or UNSUBACK does not answer the
        request that is outstanding.
        """
        kind = kind.upper()
        if kind == "SUBACK":
            logger.info("MQTT_PACKET_TYPE_SUBACK.")
            if packet_id != self.subscribe_packet_id:
                raise SessionError(
                    f"SUBACK for packet {packet_id}, expected {self.subscribe_packet_id}"
                )
            self.last_ack_packet_id = packet_id
        elif kind == "UNSUBACK":
            logger.info("MQTT_PACKET_TYPE_UNSUBACK.")
            if packet_id != self.unsubscribe_packet_id:
                raise SessionError(
                    f"UNSUBACK for packet {packet_id}, expected {self.unsubscribe_packet_id}"
                )
            self.last_ack_packet_id = packet_id
        elif kind == "PINGRESP":
            logger.warning(
                "PINGRESP should not be handled by the application callback when using the process loop."
            )
        elif kind == "PUBACK":
            logger.info("PUBACK received for packet id %u.", packet_id)
            if packet_id != PACKET_ID_INVALID:
                self.outgoing.acknowledge(packet_id)
            self.last_ack_packet_id = packet_id
        else:
            logger.error("Unknown packet type received:(%s).", kind)