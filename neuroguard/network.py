"""Spiking neural network used to score traffic for anomalies."""

from __future__ import annotations

import enum
import logging
import random
import statistics
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Protocol, Sequence, Tuple

from .config import NetworkConfig
from .state import now_ms
from .streams import Observer, Subject, Subscription, new_id

logger = logging.getLogger(__name__)

SPIKE_HISTORY = 20
PATTERN_HISTORY = 100
THREAT_HISTORY = 20
MIN_PATTERNS = 10
FORECAST_WINDOW = 9

SPIKE_WINDOW_MS = 20.0
OUTPUT_WINDOW_MS = 200.0
ACTIVITY_WINDOW_MS = 500.0
STDP_WINDOW_MS = 50.0
IDLE_DECAY_MS = 5000.0

DECAY = 0.98
IDLE_DECAY = 0.999
WEIGHT_FLOOR = 0.01
WEIGHT_CEILING = 1.0


class NeuronPhase(str, enum.Enum):
    RESTING = "resting"
    CHARGING = "charging"
    FIRING = "firing"
    REFRACTORY = "refractory"


@dataclass
class Synapse:
    id: str
    source_id: str
    target_id: str
    weight: float
    delay: float
    plasticity_enabled: bool = True
    last_activity: float = 0.0

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "weight": self.weight,
            "delay": self.delay,
            "plasticity_enabled": self.plasticity_enabled,
            "last_activity": self.last_activity,
        }


@dataclass
class Neuron:
    """Leaky integrate-and-fire unit."""

    id: str
    layer: str
    threshold: float
    refractory_period: float
    layer_index: int = 0
    potential: float = 0.0
    last_spike_time: Optional[float] = None
    spike_history: Deque[float] = field(default_factory=lambda: deque(maxlen=SPIKE_HISTORY))
    synapses: List[Synapse] = field(default_factory=list)

    def in_refractory(self, now: float) -> bool:
        return self.last_spike_time is not None and now - self.last_spike_time <= self.refractory_period

    def fire(self, now: float) -> None:
        self.last_spike_time = now
        self.spike_history.append(now)
        self.potential = 0.0

    def spikes_within(self, now: float, window: float) -> List[float]:
        return [spike for spike in self.spike_history if now - spike < window]

    def phase(self, now: float) -> NeuronPhase:
        if self.last_spike_time is not None and now == self.last_spike_time:
            return NeuronPhase.FIRING
        if self.in_refractory(now):
            return NeuronPhase.REFRACTORY
        if self.potential > 0:
            return NeuronPhase.CHARGING
        return NeuronPhase.RESTING


@dataclass(frozen=True)
class DetectedThreat:
    """Raw detection emitted by the network before orchestration."""

    id: str
    timestamp: float
    confidence: float
    related_neurons: Tuple[str, ...]
    anomaly_pattern: Tuple[float, ...]
    description: str
    mitigation_suggested: bool = False

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "confidence": self.confidence,
            "related_neurons": list(self.related_neurons),
            "anomaly_pattern": list(self.anomaly_pattern),
            "description": self.description,
            "mitigation_suggested": self.mitigation_suggested,
        }


@dataclass(frozen=True)
class NetworkSnapshot:
    timestamp: float
    current_input: Tuple[float, ...]
    current_output: Tuple[float, ...]
    anomaly_score: float
    detected_threats: int

    def as_dict(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "current_input": list(self.current_input),
            "current_output": list(self.current_output),
            "anomaly_score": self.anomaly_score,
            "detected_threats": self.detected_threats,
        }


class Forecaster(Protocol):
    def forecast(self, history: Sequence[Sequence[float]]) -> List[float]:
        ...


class MovingAverageForecaster:
    """Predicts each output position as the mean of the trailing patterns."""

    def forecast(self, history: Sequence[Sequence[float]]) -> List[float]:
        if not history:
            return []
        width = max(len(pattern) for pattern in history)
        return [
            statistics.fmean(pattern[index] if index < len(pattern) else 0.0 for pattern in history)
            for index in range(width)
        ]


def describe_threat(score: float, neuron_ids: Sequence[str]) -> str:
    inputs = sum(1 for neuron_id in neuron_ids if neuron_id.startswith("input-"))
    hidden = sum(1 for neuron_id in neuron_ids if neuron_id.startswith("hidden-"))
    outputs = sum(1 for neuron_id in neuron_ids if neuron_id.startswith("output-"))

    if score > 0.9:
        level = "Critical"
    elif score > 0.85:
        level = "High"
    elif score > 0.8:
        level = "Medium"
    else:
        level = "Low"

    return (
        f"{level} severity anomaly detected. Unusual activity in {inputs} input neurons, "
        f"{hidden} hidden neurons, and {outputs} output neurons. Confidence: {round(score * 100)}%."
    )


class SpikingNetwork:
    """Feed-forward spiking network with timing-dependent plasticity.

    Each :meth:`process` call is one tick at ``clock()``: inputs charge the
    input layer, spikes propagate layer by layer along delayed synapses, the
    output activity is compared to a forecast and the smoothed divergence is
    the anomaly score.
    """

    def __init__(
        self,
        config: Optional[NetworkConfig] = None,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = now_ms,
        forecaster: Optional[Forecaster] = None,
        detection_threshold: float = 0.75,
    ) -> None:
        self.config = config or NetworkConfig()
        self._rng = rng or random.Random()
        self._clock = clock
        self._forecaster: Forecaster = forecaster or MovingAverageForecaster()
        self._lock = threading.RLock()

        self.detection_threshold = detection_threshold
        self.learning_enabled = True
        self.anomaly_score = 0.0
        self.current_input: List[float] = []
        self.current_output: List[float] = [0.0] * self.config.output_size
        self.last_update_time = clock()

        self._patterns: Deque[List[float]] = deque(maxlen=PATTERN_HISTORY)
        self._threats: Deque[DetectedThreat] = deque(maxlen=THREAT_HISTORY)
        self._state_subject: Subject[NetworkSnapshot] = Subject()
        self._threat_subject: Subject[DetectedThreat] = Subject()

        self.layers: List[List[Neuron]] = self._build_layers()
        self.neurons: Dict[str, Neuron] = {neuron.id: neuron for layer in self.layers for neuron in layer}
        self._incoming: Dict[str, List[Synapse]] = {neuron_id: [] for neuron_id in self.neurons}
        self._connect()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    def _build_layers(self) -> List[List[Neuron]]:
        cfg = self.config
        layers: List[List[Neuron]] = [
            [
                Neuron(
                    id=f"input-{index}",
                    layer="input",
                    threshold=cfg.threshold,
                    refractory_period=cfg.refractory_period,
                )
                for index in range(cfg.input_size)
            ]
        ]
        for layer_index, size in enumerate(cfg.hidden_layers):
            layers.append(
                [
                    Neuron(
                        id=f"hidden-{layer_index}-{index}",
                        layer="hidden",
                        layer_index=layer_index,
                        threshold=cfg.threshold * (0.8 + self._rng.random() * 0.4),
                        refractory_period=cfg.refractory_period,
                    )
                    for index in range(size)
                ]
            )
        layers.append(
            [
                Neuron(
                    id=f"output-{index}",
                    layer="output",
                    threshold=cfg.threshold * 1.2,
                    refractory_period=cfg.refractory_period,
                )
                for index in range(cfg.output_size)
            ]
        )
        return layers

    def _connect(self) -> None:
        # (probability, weight base, weight span, max delay) per layer transition
        transitions = []
        for position in range(len(self.layers) - 1):
            if position == 0 and len(self.layers) > 2:
                transitions.append((0.7, 0.1, 0.5, 5))
            elif position == len(self.layers) - 2:
                transitions.append((0.8, 0.3, 0.7, 3))
            else:
                transitions.append((0.6, 0.2, 0.6, 4))

        for position, (probability, base, span, max_delay) in enumerate(transitions):
            for source in self.layers[position]:
                for target in self.layers[position + 1]:
                    if self._rng.random() >= probability:
                        continue
                    synapse = Synapse(
                        id=f"conn-{source.id}-{target.id}",
                        source_id=source.id,
                        target_id=target.id,
                        weight=self._rng.random() * span + base,
                        delay=float(int(self._rng.random() * max_delay) + 1),
                    )
                    source.synapses.append(synapse)
                    self._incoming[target.id].append(synapse)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------
    def process(self, data: Sequence[float]) -> NetworkSnapshot:
        """Run one tick with ``data`` as the input layer drive."""

        with self._lock:
            now = self._clock()

            for neuron, value in zip(self.layers[0], data):
                neuron.potential += value * 2
                if neuron.potential > neuron.threshold and not neuron.in_refractory(now):
                    neuron.fire(now)
            self.current_input = list(data)

            self._propagate(now)

            self.current_output = [
                len(neuron.spikes_within(now, OUTPUT_WINDOW_MS)) / 5 for neuron in self.layers[-1]
            ]

            threat = self._score(now) if len(self._patterns) >= MIN_PATTERNS else None

            self._patterns.append(list(self.current_output))

            if self.learning_enabled:
                self._apply_plasticity(now)

            self.last_update_time = now
            snapshot = self.snapshot()

        if threat is not None:
            self._threat_subject.publish(threat)
        self._state_subject.publish(snapshot)
        return snapshot

    def _propagate(self, now: float) -> None:
        for layer in self.layers:
            for neuron in layer:
                if neuron.in_refractory(now):
                    continue
                for synapse in self._incoming[neuron.id]:
                    source = self.neurons[synapse.source_id]
                    arrived = sum(
                        1 for spike in source.spike_history if synapse.delay <= now - spike < synapse.delay + SPIKE_WINDOW_MS
                    )
                    if arrived:
                        neuron.potential += synapse.weight * arrived
                        synapse.last_activity = now
                neuron.potential *= DECAY
                if neuron.potential > neuron.threshold:
                    neuron.fire(now)

    def _score(self, now: float) -> Optional[DetectedThreat]:
        trailing = list(self._patterns)[-FORECAST_WINDOW:]
        expected = self._forecaster.forecast(trailing)
        actual = self.current_output
        if not actual:
            return None
        differences = [
            abs(value - (expected[index] if index < len(expected) else 0.0)) for index, value in enumerate(actual)
        ]
        mean_difference = sum(differences) / len(differences)
        self.anomaly_score = self.anomaly_score * 0.7 + mean_difference * 3 * 0.3

        if self.anomaly_score > self.detection_threshold:
            return self._record_threat(now)
        return None

    def _record_threat(self, now: float) -> DetectedThreat:
        related = tuple(
            neuron.id
            for layer in self.layers
            for neuron in layer
            if len(neuron.spikes_within(now, ACTIVITY_WINDOW_MS)) > 5
        )
        threat = DetectedThreat(
            id=new_id(),
            timestamp=now,
            confidence=min(1.0, self.anomaly_score),
            related_neurons=related,
            anomaly_pattern=tuple(self.current_output),
            description=describe_threat(self.anomaly_score, related),
        )
        self._threats.append(threat)
        logger.info("Network anomaly score %.3f exceeded %.3f", self.anomaly_score, self.detection_threshold)
        return threat

    def _apply_plasticity(self, now: float) -> None:
        depress = 0.1 * self.config.learning_rate
        potentiate = 0.2 * self.config.learning_rate
        for layer in self.layers:
            for source in layer:
                source_spikes = source.spikes_within(now, OUTPUT_WINDOW_MS)
                for synapse in source.synapses:
                    if not synapse.plasticity_enabled:
                        continue
                    target_spikes = self.neurons[synapse.target_id].spikes_within(now, OUTPUT_WINDOW_MS)
                    if source_spikes and target_spikes:
                        closest = min(
                            (s - t for s in source_spikes for t in target_spikes),
                            key=abs,
                        )
                        if 0 < closest < STDP_WINDOW_MS:
                            synapse.weight = max(WEIGHT_FLOOR, synapse.weight - depress)
                        elif -STDP_WINDOW_MS < closest < 0:
                            synapse.weight = min(WEIGHT_CEILING, synapse.weight + potentiate)
                    if now - synapse.last_activity > IDLE_DECAY_MS:
                        synapse.weight *= IDLE_DECAY

    # ------------------------------------------------------------------
    # Surface
    # ------------------------------------------------------------------
    def configure_detection(self, threshold: Optional[float] = None, learning_enabled: Optional[bool] = None) -> None:
        with self._lock:
            if threshold is not None:
                self.detection_threshold = threshold
            if learning_enabled is not None:
                self.learning_enabled = learning_enabled

    def synapses(self) -> List[Synapse]:
        return [synapse for layer in self.layers for neuron in layer for synapse in neuron.synapses]

    def detected_threats(self) -> List[DetectedThreat]:
        with self._lock:
            return list(self._threats)

    def snapshot(self) -> NetworkSnapshot:
        return NetworkSnapshot(
            timestamp=self.last_update_time,
            current_input=tuple(self.current_input),
            current_output=tuple(self.current_output),
            anomaly_score=self.anomaly_score,
            detected_threats=len(self._threats),
        )

    def subscribe_to_state(self, callback: Observer) -> Subscription:
        return self._state_subject.subscribe(callback)

    def subscribe_to_threats(self, callback: Observer) -> Subscription:
        return self._threat_subject.subscribe(callback)


__all__ = [
    "DetectedThreat",
    "Forecaster",
    "MovingAverageForecaster",
    "NetworkSnapshot",
    "Neuron",
    "NeuronPhase",
    "SpikingNetwork",
    "Synapse",
    "describe_threat",
]
