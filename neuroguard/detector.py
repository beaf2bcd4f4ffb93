"""Anomaly orchestration: network detections to anomalies, threats and actions."""

from __future__ import annotations

import logging
import random
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from .config import DetectionConfig, NetworkConfig, PreprocessingConfig, apply_changes
from .features import FeatureExtractor
from .ingestion import TrafficIngestion
from .network import DetectedThreat, NetworkSnapshot, SpikingNetwork
from .state import (
    Anomaly,
    FeatureVector,
    Observation,
    PipelineStatus,
    ResponseAction,
    ThreatDetection,
    now_ms,
    severity_for_confidence,
)
from .streams import Observer, Subject, Subscription, new_id

logger = logging.getLogger(__name__)

ANOMALY_HISTORY = 100
THREAT_HISTORY = 50
ACTION_HISTORY = 50
OBSERVATION_WINDOW = 1000
ACTIVE_THREAT_WINDOW_MS = 30 * 60 * 1000
MAX_OBSERVED_VALUES = 10
ZERO_DAY_CONFIDENCE = 0.9
UPDATED_PREFIX = "Updated: "

ACTION_FOR_SEVERITY = {
    "critical": "isolate",
    "high": "block",
    "medium": "alert",
    "low": "monitor",
}

ACTION_PARAMETERS = {
    "low": {"duration": "1h", "scope": "host"},
    "medium": {"duration": "12h", "scope": "specific"},
    "high": {"duration": "24h", "scope": "subnet"},
    "critical": {"duration": "permanent", "scope": "global"},
}


def recommended_action_text(confidence: float) -> str:
    if confidence > 0.95:
        return "Immediate isolation and investigation required."
    if confidence > 0.85:
        return "Block suspicious traffic and escalate to security team."
    if confidence > 0.75:
        return "Monitor closely and collect additional data."
    return "Analyze pattern for potential false positive."


class AnomalyDetector:
    """Orchestrates ingestion, feature extraction and the spiking network.

    Network detections become :class:`Anomaly` records; confident anomalies
    are clustered into :class:`ThreatDetection` records and every new threat
    yields one :class:`ResponseAction`.
    """

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        *,
        ingestion: Optional[TrafficIngestion] = None,
        extractor: Optional[FeatureExtractor] = None,
        network: Optional[SpikingNetwork] = None,
        preprocessing: Optional[PreprocessingConfig] = None,
        network_config: Optional[NetworkConfig] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self.config = config or DetectionConfig()
        self._clock = clock
        self._lock = threading.RLock()
        rng = rng or random.Random()

        self.ingestion = ingestion or TrafficIngestion(rng=rng, clock=clock)
        self.extractor = extractor or FeatureExtractor(preprocessing)
        if network is None:
            network_config = network_config or NetworkConfig(learning_rate=self.config.learning_rate)
            network = SpikingNetwork(network_config, rng=rng, clock=clock)
        self.network = network
        self.network.configure_detection(threshold=self.config.sensitivity_threshold, learning_enabled=True)

        self._active = False
        self._status = PipelineStatus(last_update_time=clock())
        self._anomalies: Deque[Anomaly] = deque(maxlen=ANOMALY_HISTORY)
        self._threats: Deque[ThreatDetection] = deque(maxlen=THREAT_HISTORY)
        self._actions: Deque[ResponseAction] = deque(maxlen=ACTION_HISTORY)
        self._observations: Deque[Observation] = deque(maxlen=OBSERVATION_WINDOW)

        self._anomaly_subject: Subject[Anomaly] = Subject()
        self._threat_subject: Subject[ThreatDetection] = Subject()
        self._action_subject: Subject[ResponseAction] = Subject()
        self._status_subject: Subject[PipelineStatus] = Subject()

        self._subscriptions = [
            self.ingestion.subscribe_to_observations(self._handle_observation),
            self.ingestion.subscribe_to_features(self.handle_features),
            self.network.subscribe_to_threats(self._handle_network_threat),
        ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def is_active(self) -> bool:
        return self._active

    def start(self, interface: Optional[str] = None, *, simulate: bool = True) -> bool:
        with self._lock:
            if self._active:
                return True
            session_id = self.ingestion.start_capture(interface, simulate=simulate)
            if not session_id:
                return False
            self._active = True
            self._status.is_capturing = True
            self._status.is_processing = True
            self._status.capture_start_time = self.ingestion.capture_start_time
        logger.info("Anomaly detection started (session %s)", session_id)
        self._emit_status()
        return True

    def stop(self) -> None:
        with self._lock:
            if not self._active:
                return
            self.ingestion.stop_capture()
            self._active = False
            self._status.is_capturing = False
            self._status.is_processing = False
        logger.info("Anomaly detection stopped")
        self._emit_status()

    def close(self) -> None:
        self.stop()
        self.ingestion.close()
        for subscription in self._subscriptions:
            subscription.unsubscribe()

    # ------------------------------------------------------------------
    # Pipeline handlers
    # ------------------------------------------------------------------
    def _handle_observation(self, observation: Observation) -> None:
        with self._lock:
            self._observations.append(observation)
            self._status.packets_processed += 1
            self._status.last_update_time = self._clock()

    def handle_features(self, vector: FeatureVector) -> Optional[NetworkSnapshot]:
        """Run ``vector`` through the extractor and, when ready, one network tick."""

        processed = self.extractor.process_features(vector)
        if not processed:
            return None
        return self.network.process(processed)

    def process_vector(self, values: Sequence[float]) -> NetworkSnapshot:
        """Feed already-processed values straight into the network."""

        return self.network.process(values)

    def _handle_network_threat(self, detection: DetectedThreat) -> None:
        vector = self.extractor.latest() or FeatureVector.empty(detection.timestamp)
        anomaly = Anomaly(
            id=new_id(),
            timestamp=detection.timestamp,
            confidence=detection.confidence,
            related_features=detection.related_neurons,
            feature_vector=vector,
            description=detection.description,
        )
        self.record_anomaly(anomaly)

    def record_anomaly(self, anomaly: Anomaly) -> Optional[ThreatDetection]:
        """Store and publish ``anomaly``; promote it to a threat when confident enough."""

        with self._lock:
            self._anomalies.append(anomaly)
            self._status.anomalies_detected += 1
        self._anomaly_subject.publish(anomaly)
        self._emit_status()

        if anomaly.confidence > self.config.orchestration_threshold:
            return self._promote(anomaly)
        return None

    def _promote(self, anomaly: Anomaly) -> ThreatDetection:
        with self._lock:
            existing = self._find_related_threat(anomaly) if self.config.clustering_enabled else None
            if existing is not None:
                self._merge(existing, anomaly)
                threat, action = existing, None
            else:
                threat = self._new_threat(anomaly)
                action = self._response_action(threat)
                self._threats.append(threat)
                self._actions.append(action)
                self._status.threats_identified += 1
                self._status.actions_recommended += 1

        if action is None:
            logger.debug("Anomaly %s merged into threat %s", anomaly.id, threat.id)
            self._threat_subject.publish(threat)
            return threat

        logger.info("New %s threat %s (confidence %.2f)", threat.severity, threat.id, threat.confidence)
        self._action_subject.publish(action)
        self._threat_subject.publish(threat)
        self._emit_status()
        return threat

    def _find_related_threat(self, anomaly: Anomaly) -> Optional[ThreatDetection]:
        related = set(anomaly.related_features)
        anomalies_by_id = {item.id: item for item in self._anomalies}
        for threat in self._threats:
            if anomaly.timestamp - threat.timestamp >= self.config.clustering_window_ms:
                continue
            known: set = set()
            for anomaly_id in threat.anomalies:
                member = anomalies_by_id.get(anomaly_id)
                if member is not None and member.id != anomaly.id:
                    known.update(member.related_features)
            if len(related & known) >= self.config.min_shared_features:
                return threat
        return None

    def _merge(self, threat: ThreatDetection, anomaly: Anomaly) -> None:
        threat.anomalies.append(anomaly.id)
        threat.confidence = max(threat.confidence, anomaly.confidence)
        threat.severity = severity_for_confidence(threat.confidence)
        if not threat.description.startswith(UPDATED_PREFIX):
            threat.description = UPDATED_PREFIX + threat.description
        sources, destinations, ports, protocols = self._observed_context(anomaly.timestamp)
        _extend_unique(threat.source_ips, sources)
        _extend_unique(threat.destination_ips, destinations)
        _extend_unique(threat.ports, ports)
        _extend_unique(threat.protocols, protocols)

    def _new_threat(self, anomaly: Anomaly) -> ThreatDetection:
        sources, destinations, ports, protocols = self._observed_context(anomaly.timestamp)
        return ThreatDetection(
            id=new_id(),
            timestamp=anomaly.timestamp,
            severity=severity_for_confidence(anomaly.confidence),
            confidence=anomaly.confidence,
            anomalies=[anomaly.id],
            source_ips=sources,
            destination_ips=destinations,
            ports=ports,
            protocols=protocols,
            description=f"Potential zero-day threat detected with {round(anomaly.confidence * 100)}% confidence.",
            recommended_action=recommended_action_text(anomaly.confidence),
            is_zero_day=anomaly.confidence > ZERO_DAY_CONFIDENCE,
        )

    def _observed_context(self, timestamp: float) -> Tuple[List[str], List[str], List[int], List[str]]:
        window = self.extractor.config.aggregation_window
        sources: List[str] = []
        destinations: List[str] = []
        ports: List[int] = []
        protocols: List[str] = []
        for observation in self._observations:
            if not 0 <= timestamp - observation.timestamp <= window:
                continue
            _extend_unique(sources, [observation.source_ip])
            _extend_unique(destinations, [observation.destination_ip])
            if observation.destination_port:
                _extend_unique(ports, [observation.destination_port])
            _extend_unique(protocols, [observation.protocol])
        return sources, destinations, ports, protocols

    def _response_action(self, threat: ThreatDetection) -> ResponseAction:
        return ResponseAction(
            id=new_id(),
            threat_id=threat.id,
            action=ACTION_FOR_SEVERITY.get(threat.severity, "monitor"),
            target=threat.source_ips[0] if threat.source_ips else "network",
            parameters=dict(ACTION_PARAMETERS.get(threat.severity, ACTION_PARAMETERS["low"])),
            automated_execution_allowed=threat.severity != "critical",
            description=f"{threat.severity.upper()} - {threat.description}",
        )

    def _emit_status(self) -> None:
        with self._lock:
            self._status.last_update_time = self._clock()
            snapshot = self._status.copy()
        self._status_subject.publish(snapshot)

    # ------------------------------------------------------------------
    # Pull surface
    # ------------------------------------------------------------------
    def status(self) -> PipelineStatus:
        with self._lock:
            return self._status.copy()

    def anomaly_score(self) -> float:
        return self.network.anomaly_score

    def active_threat_count(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for threat in self._threats if now - threat.timestamp < ACTIVE_THREAT_WINDOW_MS)

    def anomalies(self) -> List[Anomaly]:
        with self._lock:
            return list(self._anomalies)

    def threats(self) -> List[ThreatDetection]:
        with self._lock:
            return list(self._threats)

    def get_threat(self, threat_id: str) -> Optional[ThreatDetection]:
        with self._lock:
            for threat in self._threats:
                if threat.id == threat_id:
                    return threat
        return None

    def actions(self) -> List[ResponseAction]:
        with self._lock:
            return list(self._actions)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def update_config(self, **changes: Any) -> DetectionConfig:
        with self._lock:
            self.config = apply_changes(self.config, changes)
        self.network.configure_detection(threshold=self.config.sensitivity_threshold)
        if "learning_rate" in changes:
            self.network.config = apply_changes(self.network.config, {"learning_rate": self.config.learning_rate})
        logger.info("Detection configuration updated: %s", changes)
        return self.config

    def update_preprocessing(self, **changes: Any) -> PreprocessingConfig:
        return self.extractor.update_config(**changes)

    def set_learning(self, enabled: bool) -> None:
        self.network.configure_detection(learning_enabled=enabled)
        with self._lock:
            self._status.is_learning = enabled
        self._emit_status()

    # ------------------------------------------------------------------
    # Push surface
    # ------------------------------------------------------------------
    def subscribe_to_anomalies(self, callback: Observer) -> Subscription:
        return self._anomaly_subject.subscribe(callback)

    def subscribe_to_threats(self, callback: Observer) -> Subscription:
        return self._threat_subject.subscribe(callback)

    def subscribe_to_actions(self, callback: Observer) -> Subscription:
        return self._action_subject.subscribe(callback)

    def subscribe_to_status(self, callback: Observer) -> Subscription:
        return self._status_subject.subscribe(callback)

    def subscribe_to_network_state(self, callback: Observer) -> Subscription:
        return self.network.subscribe_to_state(callback)


def _extend_unique(target: List[Any], values: Sequence[Any]) -> None:
    for value in values:
        if len(target) >= MAX_OBSERVED_VALUES:
            return
        if value not in target:
            target.append(value)


__all__ = ["AnomalyDetector", "recommended_action_text"]
