from __future__ import annotations

import random
import sys
import threading
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from neuroguard.ingestion import (
    COMMON_PORTS,
    CaptureUnavailable,
    TrafficIngestion,
    address_entropy,
    is_private,
    payload_entropy,
    port_category,
    protocol_category,
)
from neuroguard.state import FLAG_NAMES, Observation


def make_observation(timestamp: float, **overrides) -> Observation:
    values = {
        "id": f"obs-{timestamp}",
        "timestamp": timestamp,
        "source_ip": "10.0.0.1",
        "destination_ip": "192.168.1.20",
        "protocol": "TCP",
        "size": 512,
        "source_port": 51000,
        "destination_port": 443,
        "flags": ("ACK",),
        "payload": b"",
    }
    values.update(overrides)
    return Observation(**values)


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_feature_formulas(clock):
    ingestion = TrafficIngestion(rng=random.Random(1), clock=clock)
    features = []
    ingestion.subscribe_to_features(features.append)

    ingestion.ingest(make_observation(clock.now, payload=bytes(range(256))))
    ingestion.ingest(make_observation(clock.now + 250, protocol="UDP", destination_ip="8.8.8.255"))
    ingestion.ingest(make_observation(clock.now + 5250, destination_port=0, flags=("SYN", "URG")))

    first, second, third = features
    assert first.payload_entropy == pytest.approx(1.0)
    assert first.inter_packet_time == 0.0
    assert first.is_intranet == 1.0
    assert first.protocol == 0.3
    assert first.source_port_category == 0.75
    assert first.dest_port_category == 0.25
    assert first.flags_vector == (0.0, 0.0, 0.0, 0.0, 1.0, 0.0)
    assert first.packet_ratio == 0.5

    assert second.inter_packet_time == pytest.approx(0.25)
    assert second.protocol == 0.5
    assert second.is_intranet == 0.0
    assert second.dst_ip_entropy == pytest.approx(1.0)

    assert third.inter_packet_time == 1.0
    assert third.header_fields == (1.0, 1.0, 1.0, 0.0)
    assert third.flags_vector[FLAG_NAMES.index("SYN")] == 1.0
    assert third.flags_vector[FLAG_NAMES.index("URG")] == 1.0
    assert len(third.as_array()) == 20


def test_packet_ratio_after_ten_packets(clock):
    ingestion = TrafficIngestion(rng=random.Random(1), clock=clock)
    features = []
    ingestion.subscribe_to_features(features.append)

    for index in range(7):
        ingestion.ingest(make_observation(clock.now + index, protocol="TCP"))
    for index in range(3):
        ingestion.ingest(make_observation(clock.now + 10 + index, protocol="UDP"))

    assert features[8].packet_ratio == 0.5
    assert features[9].packet_ratio == pytest.approx(0.7)


def test_statistics_track_protocols_and_ports(clock):
    ingestion = TrafficIngestion(rng=random.Random(1), clock=clock)
    ingestion.ingest(make_observation(clock.now, size=100))
    clock.advance(1000)
    ingestion.ingest(make_observation(clock.now, size=300, protocol="UDP", destination_port=53))

    stats = ingestion.get_statistics()
    assert stats.total_packets == 2
    assert stats.total_bytes == 400
    assert stats.protocol_distribution == {"TCP": 1, "UDP": 1}
    assert stats.port_distribution == {"443": 1, "53": 1}
    assert stats.packets_per_second == pytest.approx(2.0)
    assert stats.bytes_per_second == pytest.approx(400.0)


def test_observation_then_feature_events_in_order(clock):
    ingestion = TrafficIngestion(rng=random.Random(1), clock=clock)
    events = []
    ingestion.subscribe_to_observations(lambda obs: events.append(("observation", obs.id)))
    ingestion.subscribe_to_features(lambda vec: events.append(("features", vec.timestamp)))

    observation = make_observation(clock.now)
    ingestion.ingest(observation)

    assert events == [("observation", observation.id), ("features", clock.now)]
    assert ingestion.recent_observations() == [observation]


def test_failed_observation_is_dropped(clock, monkeypatch, caplog):
    ingestion = TrafficIngestion(rng=random.Random(1), clock=clock)
    features = []
    ingestion.subscribe_to_features(features.append)
    original = ingestion.extract_features
    calls = {"count": 0}

    def flaky(observation):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ValueError("corrupt observation")
        return original(observation)

    monkeypatch.setattr(ingestion, "extract_features", flaky)

    assert ingestion.ingest(make_observation(clock.now)) is None
    assert ingestion.ingest(make_observation(clock.now + 10)) is not None
    assert len(features) == 1
    assert "Failed to ingest observation" in caplog.text


def test_start_capture_is_idempotent(clock):
    ingestion = TrafficIngestion(rng=random.Random(1), clock=clock)
    session_id = ingestion.start_capture(simulate=False)
    try:
        assert ingestion.is_capturing
        assert ingestion.start_capture(simulate=False) == session_id
    finally:
        ingestion.stop_capture()
    assert not ingestion.is_capturing
    assert ingestion.session_id is None


def test_queued_observations_are_delivered_in_order(clock):
    ingestion = TrafficIngestion(rng=random.Random(1), clock=clock)
    seen = []
    ingestion.subscribe_to_observations(lambda obs: seen.append(obs.id))
    ingestion.start_capture(simulate=False)
    try:
        observations = [make_observation(clock.now + index) for index in range(5)]
        for observation in observations:
            assert ingestion.enqueue(observation)
        assert wait_for(lambda: len(seen) == 5)
    finally:
        ingestion.close()
    assert seen == [observation.id for observation in observations]


def delivery_threads():
    return {thread for thread in threading.enumerate() if thread.name == "neuroguard-delivery"}


def test_restart_with_backlog_keeps_single_ordered_delivery(clock):
    ingestion = TrafficIngestion(rng=random.Random(1), clock=clock)
    seen = []
    in_flight = [0]
    peak = [0]
    guard = threading.Lock()

    def slow_observer(observation):
        with guard:
            in_flight[0] += 1
            peak[0] = max(peak[0], in_flight[0])
        time.sleep(0.005)
        with guard:
            in_flight[0] -= 1
        seen.append(observation.id)

    ingestion.subscribe_to_observations(slow_observer)
    existing = delivery_threads()
    observations = [make_observation(clock.now + index) for index in range(40)]
    ingestion.start_capture(simulate=False)
    try:
        for observation in observations[:20]:
            assert ingestion.enqueue(observation)
        ingestion.stop_capture()
        ingestion.start_capture(simulate=False)
        for observation in observations[20:]:
            assert ingestion.enqueue(observation)
        assert wait_for(lambda: len(seen) == 40, timeout=5.0)
        assert len(delivery_threads() - existing) == 1
    finally:
        ingestion.close()

    assert seen == [observation.id for observation in observations]
    assert peak[0] == 1
    assert not (delivery_threads() - existing)


def test_full_queue_drops_new_observations(clock, caplog):
    ingestion = TrafficIngestion(rng=random.Random(1), clock=clock, queue_size=1)
    assert ingestion.enqueue(make_observation(clock.now))
    assert not ingestion.enqueue(make_observation(clock.now + 1))
    assert ingestion.dropped == 1
    assert ingestion.pending() == 1
    assert "queue full" in caplog.text


class UnavailableSource:
    def __init__(self) -> None:
        self.opened = 0

    def open(self, interface, callback):
        self.opened += 1
        raise CaptureUnavailable(f"no such device: {interface}")

    def close(self) -> None:
        raise AssertionError("close must not be called for a source that never opened")


def test_capture_backend_failure_falls_back_to_simulation(clock, caplog):
    source = UnavailableSource()
    ingestion = TrafficIngestion(rng=random.Random(1), clock=clock, packet_source=source)
    session_id = ingestion.start_capture("wlan9")
    try:
        assert session_id
        assert source.opened == 1
        assert ingestion.is_capturing
        assert "using simulated traffic" in caplog.text
    finally:
        ingestion.close()


class RecordingSource:
    def __init__(self) -> None:
        self.callback = None
        self.closed = False

    def open(self, interface, callback):
        self.callback = callback

    def close(self) -> None:
        self.closed = True


def test_capture_backend_feeds_delivery_queue(clock):
    source = RecordingSource()
    ingestion = TrafficIngestion(rng=random.Random(1), clock=clock, packet_source=source)
    seen = []
    ingestion.subscribe_to_observations(seen.append)
    ingestion.start_capture("eth1")
    try:
        source.callback(make_observation(clock.now))
        assert wait_for(lambda: len(seen) == 1)
    finally:
        ingestion.close()
    assert source.closed


def test_simulated_observation_kinds(clock):
    ingestion = TrafficIngestion(rng=random.Random(7), clock=clock)

    normal = ingestion.generate_observation("normal")
    assert normal.flags == ("ACK",)
    assert normal.destination_port in COMMON_PORTS

    suspicious = ingestion.generate_observation("suspicious")
    assert suspicious.flags == ("SYN",)
    assert 50000 <= suspicious.destination_port < 60000

    anomalous = ingestion.generate_observation("anomalous")
    assert anomalous.size == 1500
    assert anomalous.protocol == "OTHER"
    assert anomalous.flags == FLAG_NAMES
    assert anomalous.destination_port == 0
    assert len(anomalous.payload) < 100

    with pytest.raises(ValueError):
        ingestion.generate_observation("weird")


def test_burst_targets_one_destination(clock):
    ingestion = TrafficIngestion(rng=random.Random(3), clock=clock)
    burst = ingestion.generate_burst()

    assert 20 <= len(burst) < 50
    assert len({observation.destination_ip for observation in burst}) == 1
    assert len({observation.destination_port for observation in burst}) == 1
    assert all(observation.flags == ("SYN",) and observation.size == 60 for observation in burst)


def test_helper_formulas():
    assert payload_entropy(b"") == 0.0
    assert payload_entropy(b"aaaa") == 0.0
    assert payload_entropy(b"ab") == pytest.approx(1 / 8)
    assert address_entropy("0.0.0.0") == 0.0
    assert address_entropy("") == 0.0
    assert address_entropy("not-an-ip") == 0.0
    assert address_entropy("10.1.2.51") == pytest.approx(0.2)
    assert is_private("172.16.0.1") and is_private("172.31.9.9")
    assert not is_private("172.32.0.1")
    assert port_category(0) == 0.0
    assert port_category(80) == 0.25
    assert port_category(8080) == 0.5
    assert port_category(50000) == 0.75
    assert protocol_category("ICMP") == 0.1
    assert protocol_category("17") == 0.5
    assert protocol_category("OTHER") == 0.9
