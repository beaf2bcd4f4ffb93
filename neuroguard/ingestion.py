"""Traffic ingestion: simulated capture, rolling statistics and feature vectors."""

from __future__ import annotations

import ipaddress
import logging
import math
import queue
import random
import threading
from collections import Counter, deque
from typing import Callable, Deque, List, Optional, Protocol, Sequence

from .state import FLAG_NAMES, FeatureVector, Observation, TrafficStatistics, now_ms
from .streams import Observer, Subject, Subscription, new_id

logger = logging.getLogger(__name__)

COMMON_PORTS: Sequence[int] = (
    21, 22, 23, 25, 53, 80, 110, 143, 443, 465, 587, 993, 995, 3306, 3389, 5432, 8080,
)
SIMULATED_PROTOCOLS: Sequence[str] = ("ICMP", "TCP", "UDP")
PROTOCOL_CATEGORIES = {"ICMP": 0.1, "1": 0.1, "TCP": 0.3, "6": 0.3, "UDP": 0.5, "17": 0.5}
INTRANET_NETWORKS = tuple(
    ipaddress.ip_network(block) for block in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")
)

BUFFER_CAPACITY = 1000
BURST_SPACING_S = 0.01


class CaptureUnavailable(RuntimeError):
    """Raised by a packet source that cannot open the requested interface."""


class PacketSource(Protocol):
    """Real capture backend feeding observations through ``callback``."""

    def open(self, interface: str, callback: Callable[[Observation], None]) -> None:
        ...

    def close(self) -> None:
        ...


class _GeneratorLoop:
    """Periodic generator: every ``interval`` seconds fire with ``probability``."""

    def __init__(self, name: str, interval: float, probability: float, action: Callable[[], None]) -> None:
        self.name = name
        self.interval = interval
        self.probability = probability
        self.action = action


class TrafficIngestion:
    """Produces observations, keeps traffic statistics and derives feature vectors.

    Generator loops run on daemon threads and only enqueue; a single delivery
    thread drains the queue and calls :meth:`ingest`, so every subscriber sees
    observations serialized in enqueue order.
    """

    def __init__(
        self,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = now_ms,
        packet_source: Optional[PacketSource] = None,
        queue_size: int = 10_000,
    ) -> None:
        self._rng = rng or random.Random()
        self._clock = clock
        self._packet_source = packet_source
        self._queue: "queue.Queue[Observation]" = queue.Queue(maxsize=queue_size)
        self._lock = threading.RLock()

        self._session_id: Optional[str] = None
        self._capture_start: Optional[float] = None
        self._buffer: Deque[Observation] = deque(maxlen=BUFFER_CAPACITY)
        self._stats = TrafficStatistics()

        self._observations: Subject[Observation] = Subject()
        self._features: Subject[FeatureVector] = Subject()

        self._stop_event: Optional[threading.Event] = None
        self._threads: List[threading.Thread] = []
        self._delivery_thread: Optional[threading.Thread] = None
        self._shutdown = threading.Event()
        self._source_open = False
        self.dropped = 0

    # ------------------------------------------------------------------
    # Capture lifecycle
    # ------------------------------------------------------------------
    @property
    def is_capturing(self) -> bool:
        return self._session_id is not None

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def capture_start_time(self) -> Optional[float]:
        return self._capture_start

    def start_capture(self, interface: Optional[str] = None, *, simulate: bool = True) -> str:
        """Start a capture session; returns the existing id when already running.

        ``simulate=False`` starts the session without generator threads so that
        observations only arrive through :meth:`ingest` or :meth:`enqueue`.
        """

        with self._lock:
            if self._session_id is not None:
                return self._session_id

            self._session_id = new_id()
            self._capture_start = self._clock()
            self._stats = TrafficStatistics()
            self._buffer.clear()
            stop_event = threading.Event()
            self._stop_event = stop_event
            interface_name = interface or "eth0"

            use_simulator = simulate
            if self._packet_source is not None:
                try:
                    self._packet_source.open(interface_name, self.enqueue)
                except (CaptureUnavailable, OSError) as exc:
                    logger.warning("Packet capture on %s unavailable (%s); using simulated traffic", interface_name, exc)
                else:
                    self._source_open = True
                    use_simulator = False

            # the delivery thread outlives capture sessions; only close() ends it
            if self._delivery_thread is None or not self._delivery_thread.is_alive():
                self._shutdown.clear()
                self._delivery_thread = self._spawn("neuroguard-delivery", self._deliver)
            self._threads = []
            if use_simulator:
                for loop in self._generator_loops():
                    self._threads.append(self._spawn(f"neuroguard-{loop.name}", self._run_loop, stop_event, loop))

            logger.info("Capture session %s started on %s", self._session_id, interface_name)
            return self._session_id

    def stop_capture(self) -> None:
        with self._lock:
            if self._session_id is None:
                return
            session_id, self._session_id = self._session_id, None
            if self._stop_event is not None:
                self._stop_event.set()
            if self._source_open and self._packet_source is not None:
                try:
                    self._packet_source.close()
                except OSError:
                    logger.exception("Error closing packet capture")
                self._source_open = False
        logger.info("Capture session %s stopped", session_id)

    def close(self, timeout: float = 2.0) -> None:
        """Stop capturing and terminate the delivery thread.

        Observations still queued when the thread exits are discarded.
        """

        self.stop_capture()
        self._shutdown.set()
        thread = self._delivery_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._delivery_thread = None

    def _spawn(self, name: str, target: Callable[..., None], *args: object) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        return thread

    def _generator_loops(self) -> List[_GeneratorLoop]:
        return [
            _GeneratorLoop("normal", 0.1, 1.0, lambda: self.enqueue(self.generate_observation("normal"))),
            _GeneratorLoop("suspicious", 0.5, 0.1, lambda: self.enqueue(self.generate_observation("suspicious"))),
            _GeneratorLoop("anomalous", 2.0, 0.05, lambda: self.enqueue(self.generate_observation("anomalous"))),
            _GeneratorLoop("burst", 10.0, 0.02, self._emit_burst),
        ]

    def _run_loop(self, stop_event: threading.Event, loop: _GeneratorLoop) -> None:
        while not stop_event.wait(loop.interval):
            try:
                if loop.probability >= 1.0 or self._rng.random() < loop.probability:
                    loop.action()
            except Exception:
                logger.exception("Traffic generator %s failed", loop.name)

    def _emit_burst(self) -> None:
        stop_event = self._stop_event
        for observation in self.generate_burst():
            if stop_event is None or stop_event.is_set():
                return
            self.enqueue(observation)
            stop_event.wait(BURST_SPACING_S)

    def _deliver(self) -> None:
        while not self._shutdown.is_set():
            try:
                observation = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self.ingest(observation)
            finally:
                self._queue.task_done()

    def enqueue(self, observation: Observation) -> bool:
        """Queue an observation for the delivery thread; drops it when full."""

        try:
            self._queue.put_nowait(observation)
        except queue.Full:
            self.dropped += 1
            logger.warning("Ingestion queue full; dropping observation %s", observation.id)
            return False
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Per-observation path
    # ------------------------------------------------------------------
    def ingest(self, observation: Observation) -> Optional[FeatureVector]:
        """Update statistics, derive features and publish both events.

        A failure here only drops ``observation``; the pipeline keeps running.
        """

        try:
            with self._lock:
                if self._capture_start is None:
                    self._capture_start = observation.timestamp
                self._update_statistics(observation)
                features = self.extract_features(observation)
                self._buffer.append(observation)
        except Exception:
            logger.exception("Failed to ingest observation %s", observation.id)
            return None

        self._observations.publish(observation)
        self._features.publish(features)
        return features

    def _update_statistics(self, observation: Observation) -> None:
        stats = self._stats
        stats.total_packets += 1
        stats.total_bytes += observation.size

        protocol_key = observation.protocol or "OTHER"
        stats.protocol_distribution[protocol_key] = stats.protocol_distribution.get(protocol_key, 0) + 1
        if observation.destination_port:
            port_key = str(observation.destination_port)
            stats.port_distribution[port_key] = stats.port_distribution.get(port_key, 0) + 1

        elapsed = (self._clock() - (self._capture_start or 0.0)) / 1000.0
        if elapsed > 0:
            stats.packets_per_second = stats.total_packets / elapsed
            stats.bytes_per_second = stats.total_bytes / elapsed

    def extract_features(self, observation: Observation) -> FeatureVector:
        """Derive the feature vector for ``observation`` against current context."""

        return FeatureVector(
            timestamp=observation.timestamp,
            protocol=protocol_category(observation.protocol),
            packet_size=float(observation.size),
            source_port_category=port_category(observation.source_port),
            dest_port_category=port_category(observation.destination_port),
            flags_vector=tuple(1.0 if flag in observation.flags else 0.0 for flag in FLAG_NAMES),
            payload_entropy=payload_entropy(observation.payload),
            src_ip_entropy=address_entropy(observation.source_ip),
            dst_ip_entropy=address_entropy(observation.destination_ip),
            is_intranet=1.0 if is_private(observation.source_ip) and is_private(observation.destination_ip) else 0.0,
            header_fields=(
                1.0 if observation.size > 0 else 0.0,
                1.0 if observation.protocol not in ("", "0") else 0.0,
                1.0 if observation.source_port != 0 else 0.0,
                1.0 if observation.destination_port != 0 else 0.0,
            ),
            inter_packet_time=self._inter_arrival(observation),
            packet_ratio=self._packet_ratio(),
        )

    def _inter_arrival(self, observation: Observation) -> float:
        if not self._buffer:
            return 0.0
        delta = (observation.timestamp - self._buffer[-1].timestamp) / 1000.0
        return min(1.0, max(0.0, delta))

    def _packet_ratio(self) -> float:
        if self._stats.total_packets < 10:
            return 0.5
        tcp = self._stats.protocol_distribution.get("TCP", 0)
        udp = self._stats.protocol_distribution.get("UDP", 0)
        if tcp + udp == 0:
            return 0.5
        return tcp / (tcp + udp)

    # ------------------------------------------------------------------
    # Simulator
    # ------------------------------------------------------------------
    def generate_observation(self, kind: str = "normal") -> Observation:
        """Build one simulated observation of ``kind`` (normal/suspicious/anomalous)."""

        rng = self._rng
        protocol = SIMULATED_PROTOCOLS[int(rng.random() * len(SIMULATED_PROTOCOLS))]
        size = int(rng.random() * 1460) + 40
        destination_port = self._random_port()
        flags = self._random_flags()

        if kind == "normal":
            destination_port = self._common_port()
            flags = ("ACK",)
        elif kind == "suspicious":
            destination_port = int(rng.random() * 10_000) + 50_000
            flags = ("SYN",)
        elif kind == "anomalous":
            size = 1500
            protocol = "OTHER"
            flags = FLAG_NAMES
            destination_port = 0
        else:
            raise ValueError(f"Unknown observation kind: {kind!r}")

        payload = bytes(int(rng.random() * 256) for _ in range(int(rng.random() * 100)))
        return Observation(
            id=new_id(),
            timestamp=self._clock(),
            source_ip=self._random_ip(),
            destination_ip=self._random_ip(),
            protocol=protocol,
            size=size,
            source_port=self._random_port(),
            destination_port=destination_port,
            flags=flags,
            ttl=64,
            payload=payload,
            interface="eth0",
            direction="inbound" if rng.random() > 0.5 else "outbound",
        )

    def generate_burst(self) -> List[Observation]:
        """Build a SYN burst of 20-50 small packets toward one target."""

        target_ip = self._random_ip()
        target_port = self._common_port()
        count = int(self._rng.random() * 30) + 20
        return [
            Observation(
                id=new_id(),
                timestamp=self._clock(),
                source_ip=self._random_ip(),
                destination_ip=target_ip,
                protocol="TCP",
                size=60,
                source_port=int(self._rng.random() * 65535),
                destination_port=target_port,
                flags=("SYN",),
                ttl=64,
                payload=b"",
                interface="eth0",
                direction="inbound",
            )
            for _ in range(count)
        ]

    def _random_ip(self) -> str:
        rng = self._rng
        return "{}.{}.{}.{}".format(
            int(rng.random() * 223) + 1,
            int(rng.random() * 256),
            int(rng.random() * 256),
            int(rng.random() * 256),
        )

    def _random_port(self) -> int:
        return int(self._rng.random() * 65535) + 1

    def _common_port(self) -> int:
        return COMMON_PORTS[int(self._rng.random() * len(COMMON_PORTS))]

    def _random_flags(self) -> tuple:
        count = int(self._rng.random() * 3) + 1
        return tuple(FLAG_NAMES[int(self._rng.random() * len(FLAG_NAMES))] for _ in range(count))

    # ------------------------------------------------------------------
    # Pull / push surface
    # ------------------------------------------------------------------
    def get_statistics(self) -> TrafficStatistics:
        with self._lock:
            return self._stats.copy()

    def recent_observations(self, limit: Optional[int] = None) -> List[Observation]:
        with self._lock:
            items = list(self._buffer)
        return items[-limit:] if limit else items

    def subscribe_to_observations(self, callback: Observer) -> Subscription:
        return self._observations.subscribe(callback)

    def subscribe_to_features(self, callback: Observer) -> Subscription:
        return self._features.subscribe(callback)


def protocol_category(protocol: str) -> float:
    return PROTOCOL_CATEGORIES.get(protocol.upper(), 0.9)


def port_category(port: int) -> float:
    if port == 0:
        return 0.0
    if port < 1024:
        return 0.25
    if port < 49152:
        return 0.5
    return 0.75


def payload_entropy(payload: bytes) -> float:
    """Shannon entropy of the byte distribution, scaled to [0, 1]."""

    if not payload:
        return 0.0
    total = len(payload)
    entropy = 0.0
    for count in Counter(payload).values():
        probability = count / total
        entropy -= probability * math.log2(probability)
    return entropy / 8.0


def address_entropy(address: str) -> float:
    if not address or address == "0.0.0.0":
        return 0.0
    octets = address.split(".")
    if len(octets) != 4:
        return 0.0
    try:
        last = int(octets[3])
    except ValueError:
        return 0.0
    if not 0 <= last <= 255:
        return 0.0
    return last / 255.0


def is_private(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in network for network in INTRANET_NETWORKS)


__all__ = [
    "CaptureUnavailable",
    "PacketSource",
    "TrafficIngestion",
    "address_entropy",
    "is_private",
    "payload_entropy",
    "port_category",
    "protocol_category",
]
