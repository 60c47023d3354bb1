"""Bookkeeping for QoS 1 publishes that still await a PUBACK."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MAX_OUTGOING_PUBLISHES = 5
PACKET_ID_INVALID = 0
QOS_AT_LEAST_ONCE = 1

Payload = bytes | str | None


class NoFreeSlotError(RuntimeError):
    """Every slot for unacknowledged publishes is in use."""


@dataclass
class PendingPublish:
    """A QoS 1 publish kept until the broker acknowledges it."""

    packet_id: int
    topic: str
    payload: Payload = None
    qos: int = QOS_AT_LEAST_ONCE
    dup: bool = False


class OutgoingPublishes:
    """A fixed number of slots holding publishes awaiting acknowledgement.

    Publishes are kept so they can be sent again when a session with the
    broker is re-established before their PUBACK arrived.
    """

    def __init__(self, capacity: int = MAX_OUTGOING_PUBLISHES) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._slots: list[PendingPublish | None] = [None] * capacity

    @property
    def capacity(self) -> int:
        """Number of publishes that can be awaiting acknowledgement at once."""
        return len(self._slots)

    def __len__(self) -> int:
        return sum(slot is not None for slot in self._slots)

    def __iter__(self) -> Iterator[PendingPublish]:
        return iter(self.pending())

    def __contains__(self, packet_id: object) -> bool:
        return any(slot is not None and slot.packet_id == packet_id for slot in self._slots)

    def reserve(self, topic: str, payload: Payload, packet_id: int) -> PendingPublish:
        """Store a publish in the first free slot and return it.

        Raises ValueError for the invalid packet ID zero and NoFreeSlotError
        when all slots are taken.
        """
        if packet_id == PACKET_ID_INVALID:
            raise ValueError("packet ID 0 is not a valid packet identifier")
        if not topic:
            raise ValueError("topic must not be empty")
        try:
            index = self._slots.index(None)
        except ValueError:
            raise NoFreeSlotError(
                "Unable to find a free spot for outgoing PUBLISH message."
            ) from None
        entry = PendingPublish(packet_id=packet_id, topic=topic, payload=payload)
        self._slots[index] = entry
        return entry

    def _remove(self, packet_id: int) -> PendingPublish | None:
        for index, slot in enumerate(self._slots):
            if slot is not None and slot.packet_id == packet_id:
                self._slots[index] = None
                return slot
        return None

    def acknowledge(self, packet_id: int) -> PendingPublish | None:
        """Drop the publish acknowledged with ``packet_id``.

        Returns the dropped publish, or None when no publish had that ID.
        """
        if packet_id == PACKET_ID_INVALID:
            raise ValueError("packet ID 0 is not a valid packet identifier")
        removed = self._remove(packet_id)
        if removed is not None:
            logger.info("Cleaned up outgoing publish packet with packet id %u.", packet_id)
        return removed

    def release(self, packet_id: int) -> PendingPublish:
        """Free the slot of a publish that could not be sent.

        Raises KeyError when no publish has ``packet_id``.
        """
        removed = self._remove(packet_id)
        if removed is None:
            raise KeyError(packet_id)
        return removed

    def clear(self) -> None:
        """Forget every stored publish."""
        self._slots = [None] * len(self._slots)

    def pending(self) -> list[PendingPublish]:
        """Stored publishes in slot order."""
        return [slot for slot in self._slots if slot is not None]