import pytest

from iotjobs.publishes import (
    MAX_OUTGOING_PUBLISHES,
    NoFreeSlotError,
    OutgoingPublishes,
    PendingPublish,
)


def _fill(store, count, start=1):
    return [store.reserve(f"demo/{i}", b"x", i) for i in range(start, start + count)]


def test_default_capacity_is_five():
    store = OutgoingPublishes()
    assert store.capacity == MAX_OUTGOING_PUBLISHES == 5


def test_reserve_returns_stored_entry():
    store = OutgoingPublishes()
    entry = store.reserve("demo/jobs", b"hello", 7)
    assert entry == PendingPublish(packet_id=7, topic="demo/jobs", payload=b"hello", qos=1, dup=False)
    assert store.pending() == [entry]
    assert 7 in store
    assert len(store) == 1


def test_payload_may_be_none():
    store = OutgoingPublishes()
    entry = store.reserve("demo/start-next", None, 3)
    assert entry.payload is None
    assert store.pending()[0].topic == "demo/start-next"


def test_full_store_raises():
    store = OutgoingPublishes()
    _fill(store, MAX_OUTGOING_PUBLISHES)
    with pytest.raises(NoFreeSlotError):
        store.reserve("demo/extra", b"x", 99)
    assert len(store) == MAX_OUTGOING_PUBLISHES


def test_packet_id_zero_rejected():
    store = OutgoingPublishes()
    with pytest.raises(ValueError):
        store.reserve("demo/jobs", b"x", 0)
    with pytest.raises(ValueError):
        store.acknowledge(0)
    assert len(store) == 0


def test_empty_topic_rejected():
    with pytest.raises(ValueError):
        OutgoingPublishes().reserve("", b"x", 1)


def test_invalid_capacity():
    with pytest.raises(ValueError):
        OutgoingPublishes(capacity=0)


def test_acknowledge_frees_slot_for_reuse():
    store = OutgoingPublishes()
    entries = _fill(store, MAX_OUTGOING_PUBLISHES)
    removed = store.acknowledge(entries[2].packet_id)
    assert removed == entries[2]
    assert entries[2].packet_id not in store
    new = store.reserve("demo/new", b"y", 42)
    # The freed slot is the first free one, so order places it in the middle.
    assert store.pending() == entries[:2] + [new] + entries[3:]


def test_acknowledge_unknown_returns_none():
    store = OutgoingPublishes()
    entries = _fill(store, 2)
    assert store.acknowledge(1000) is None
    assert store.pending() == entries


def test_release_removes_and_missing_raises():
    store = OutgoingPublishes()
    entries = _fill(store, 3)
    assert store.release(entries[0].packet_id) == entries[0]
    assert store.pending() == entries[1:]
    with pytest.raises(KeyError):
        store.release(entries[0].packet_id)


def test_clear_empties_all_slots():
    store = OutgoingPublishes()
    _fill(store, MAX_OUTGOING_PUBLISHES)
    store.clear()
    assert store.pending() == []
    assert len(store) == 0
    _fill(store, MAX_OUTGOING_PUBLISHES, start=10)
    assert len(store) == MAX_OUTGOING_PUBLISHES


def test_pending_keeps_slot_order_and_dup_flag_mutable():
    store = OutgoingPublishes()
    entries = _fill(store, 3)
    for entry in store.pending():
        entry.dup = True
    assert [e.packet_id for e in store] == [e.packet_id for e in entries]
    assert all(e.dup for e in store.pending())


def test_custom_capacity():
    store = OutgoingPublishes(capacity=2)
    _fill(store, 2)
    with pytest.raises(NoFreeSlotError):
        store.reserve("demo/x", b"x", 50)
    assert store.capacity == 2