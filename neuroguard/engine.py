"""NeuroGuard application engine."""
from __future__ import annotations

import logging
import random
from typing import Any, Callable, Dict, List, Mapping, Optional

from .alerts import AlertDispatcher, Notifier, Scheduler, thread_scheduler
from .analysis import OllamaTextGenerator, TextGenerator, ThreatAnalyst, ThreatBriefing
from .config import Settings, get_settings
from .detector import AnomalyDetector
from .features import FeatureExtractor
from .ingestion import PacketSource, TrafficIngestion
from .network import SpikingNetwork
from .state import ActionResult, Alert, Observation, PipelineStatus, ResponseAction, now_ms
from .streams import Observer, Subscription
from .visualization import VisualizationAdapter

logger = logging.getLogger(__name__)


class NeuroGuardEngine:
    """Owns every pipeline component and the wiring between them."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = now_ms,
        packet_source: Optional[PacketSource] = None,
        text_generator: Optional[TextGenerator] = None,
        scheduler: Scheduler = thread_scheduler,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.settings = settings or Settings()
        rng = rng or random.Random(self.settings.random_seed)
        self._clock = clock

        self.ingestion = TrafficIngestion(
            rng=rng,
            clock=clock,
            packet_source=packet_source,
            queue_size=self.settings.ingestion_queue_size,
        )
        self.extractor = FeatureExtractor(self.settings.preprocessing)
        self.network = SpikingNetwork(
            self.settings.network,
            rng=rng,
            clock=clock,
            detection_threshold=self.settings.detection.sensitivity_threshold,
        )
        self.detector = AnomalyDetector(
            self.settings.detection,
            ingestion=self.ingestion,
            extractor=self.extractor,
            network=self.network,
            clock=clock,
        )
        self.dispatcher = AlertDispatcher(
            self.settings.alerts,
            rng=rng,
            clock=clock,
            scheduler=scheduler,
            notifier=notifier,
        )
        self.visualization = VisualizationAdapter(self.detector)
        self.analyst = ThreatAnalyst(text_generator, clock=clock)

        self._subscriptions = [
            self.detector.subscribe_to_anomalies(self.dispatcher.process_anomaly),
            self.detector.subscribe_to_threats(self.dispatcher.process_threat_detection),
            self.detector.subscribe_to_actions(self.dispatcher.process_response_action),
        ]

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides: Any) -> "NeuroGuardEngine":
        """Build an engine with an Ollama-backed analyst from ``settings``."""

        settings = settings or get_settings()
        if "text_generator" not in overrides:
            overrides["text_generator"] = OllamaTextGenerator(
                settings.text_generation_url,
                settings.text_generation_model,
                timeout=settings.text_generation_timeout,
            )
        return cls(settings, **overrides)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, interface: Optional[str] = None, *, simulate: bool = True) -> bool:
        return self.detector.start(interface or self.settings.capture_interface, simulate=simulate)

    def stop(self) -> None:
        self.detector.stop()

    def shutdown(self) -> None:
        self.detector.close()
        self.dispatcher.shutdown()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        logger.info("NeuroGuard engine shut down")

    @property
    def is_running(self) -> bool:
        return self.detector.is_active

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------
    def ingest(self, payload: Mapping[str, object]) -> Observation:
        """Replay one observation; queued while capturing, inline otherwise."""

        observation = Observation.from_payload(payload, timestamp=self._clock())
        if self.ingestion.is_capturing:
            self.ingestion.enqueue(observation)
        else:
            self.ingestion.ingest(observation)
        return observation

    # ------------------------------------------------------------------
    # Pull surface
    # ------------------------------------------------------------------
    def status(self) -> Dict[str, object]:
        status: PipelineStatus = self.detector.status()
        return {
            **status.as_dict(),
            "anomaly_score": self.detector.anomaly_score(),
            "active_threats": self.detector.active_threat_count(),
            "statistics": self.ingestion.get_statistics().as_dict(),
            "session_id": self.ingestion.session_id,
        }

    def visual_state(self) -> Dict[str, object]:
        return self.visualization.visual_state()

    def neural_activity(self) -> Dict[str, object]:
        return self.visualization.neural_activity()

    def all_alerts(self) -> List[Alert]:
        return self.dispatcher.all_alerts()

    def active_alerts(self) -> List[Alert]:
        return self.dispatcher.active_alerts()

    def pending_actions(self) -> List[ResponseAction]:
        return self.dispatcher.pending_actions()

    def executed_actions(self) -> List[ActionResult]:
        return self.dispatcher.executed_actions()

    def execute_action(self, action_id: str) -> ActionResult:
        return self.dispatcher.execute_action(action_id)

    def acknowledge_alert(self, alert_id: str) -> bool:
        return self.dispatcher.acknowledge_alert(alert_id)

    def brief_threat(self, threat_id: str) -> Optional[ThreatBriefing]:
        threat = self.detector.get_threat(threat_id)
        if threat is None:
            return None
        return self.analyst.brief(threat)

    def status_report(self) -> ThreatBriefing:
        return self.analyst.status_report(self.detector.threats(), self.detector.anomalies())

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def update_detection(self, **changes: Any) -> Dict[str, object]:
        return self.detector.update_config(**changes).model_dump()

    def update_preprocessing(self, **changes: Any) -> Dict[str, object]:
        return self.detector.update_preprocessing(**changes).model_dump()

    def update_alerts(self, **changes: Any) -> Dict[str, object]:
        return self.dispatcher.update_config(**changes).model_dump()

    def set_learning(self, enabled: bool) -> None:
        self.detector.set_learning(enabled)

    # ------------------------------------------------------------------
    # Push surface
    # ------------------------------------------------------------------
    def subscribe_to_alerts(self, callback: Observer) -> Subscription:
        return self.dispatcher.subscribe_to_alerts(callback)

    def subscribe_to_active_alerts(self, callback: Observer) -> Subscription:
        return self.dispatcher.subscribe_to_active_alerts(callback)

    def subscribe_to_actions(self, callback: Observer) -> Subscription:
        return self.dispatcher.subscribe_to_actions(callback)

    def subscribe_to_action_results(self, callback: Observer) -> Subscription:
        return self.dispatcher.subscribe_to_action_results(callback)

    def subscribe_to_visual_state(self, callback: Observer) -> Subscription:
        return self.visualization.subscribe_to_visual_state(callback)


__all__ = ["NeuroGuardEngine"]
