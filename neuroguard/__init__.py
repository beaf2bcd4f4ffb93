"""NeuroGuard core exports."""

from .alerts import AlertDispatcher
from .analysis import OllamaTextGenerator, TextGenerationError, ThreatAnalyst, ThreatBriefing
from .config import AlertConfig, DetectionConfig, NetworkConfig, PreprocessingConfig, Settings, get_settings
from .detector import AnomalyDetector
from .engine import NeuroGuardEngine
from .features import FeatureExtractor
from .ingestion import CaptureUnavailable, PacketSource, TrafficIngestion
from .network import DetectedThreat, MovingAverageForecaster, SpikingNetwork
from .state import (
    ActionResult,
    Alert,
    Anomaly,
    FeatureVector,
    Observation,
    PipelineStatus,
    ResponseAction,
    ThreatDetection,
    TrafficStatistics,
    severity_for_confidence,
)
from .streams import BehaviorSubject, Subject, Subscription, new_id
from .visualization import VisualizationAdapter

__all__ = [
    "ActionResult",
    "Alert",
    "AlertConfig",
    "AlertDispatcher",
    "Anomaly",
    "AnomalyDetector",
    "BehaviorSubject",
    "CaptureUnavailable",
    "DetectedThreat",
    "DetectionConfig",
    "FeatureExtractor",
    "FeatureVector",
    "MovingAverageForecaster",
    "NetworkConfig",
    "NeuroGuardEngine",
    "Observation",
    "OllamaTextGenerator",
    "PacketSource",
    "PipelineStatus",
    "PreprocessingConfig",
    "ResponseAction",
    "Settings",
    "SpikingNetwork",
    "Subject",
    "Subscription",
    "TextGenerationError",
    "ThreatAnalyst",
    "ThreatBriefing",
    "ThreatDetection",
    "TrafficIngestion",
    "TrafficStatistics",
    "VisualizationAdapter",
    "get_settings",
    "new_id",
    "severity_for_confidence",
]
