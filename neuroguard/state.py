"""Records exchanged between NeuroGuard pipeline stages."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from .streams import new_id


__all__ = [
    "ALERT_SEVERITIES",
    "ACTION_KINDS",
    "FEATURE_NAMES",
    "FLAG_NAMES",
    "THREAT_SEVERITY_LEVELS",
    "ActionResult",
    "Alert",
    "Anomaly",
    "FeatureVector",
    "Observation",
    "PipelineStatus",
    "ResponseAction",
    "ThreatDetection",
    "TrafficStatistics",
    "now_ms",
    "severity_for_confidence",
    "severity_level",
]

FLAG_NAMES: Tuple[str, ...] = ("FIN", "SYN", "RST", "PSH", "ACK", "URG")

FEATURE_NAMES: Tuple[str, ...] = (
    "protocol",
    "packet_size",
    "source_port_category",
    "dest_port_category",
    "flag_fin",
    "flag_syn",
    "flag_rst",
    "flag_psh",
    "flag_ack",
    "flag_urg",
    "payload_entropy",
    "src_ip_entropy",
    "dst_ip_entropy",
    "is_intranet",
    "header_has_size",
    "header_has_protocol",
    "header_has_source_port",
    "header_has_destination_port",
    "inter_packet_time",
    "packet_ratio",
)

THREAT_SEVERITY_LEVELS: Mapping[str, int] = {
    "low": 1,
    "medium": 2,
    "high": 3,
    "critical": 4,
}

ALERT_SEVERITIES: Tuple[str, ...] = ("info", "warning", "critical", "error")

ACTION_KINDS: Tuple[str, ...] = ("monitor", "alert", "block", "isolate", "analyze")


def now_ms() -> float:
    """Default pipeline clock: wall time in epoch milliseconds."""

    return time.time() * 1000.0


def severity_for_confidence(confidence: float) -> str:
    """Map a confidence score onto the threat severity ladder."""

    if confidence > 0.95:
        return "critical"
    if confidence > 0.85:
        return "high"
    if confidence > 0.75:
        return "medium"
    return "low"


def severity_level(severity: str) -> int:
    return THREAT_SEVERITY_LEVELS.get(severity, 0)


@dataclass(frozen=True)
class Observation:
    """A single unit of (simulated) network traffic."""

    id: str
    timestamp: float
    source_ip: str
    destination_ip: str
    protocol: str
    size: int
    source_port: int
    destination_port: int
    flags: Tuple[str, ...] = ()
    ttl: int = 64
    payload: bytes = b""
    interface: str = "eth0"
    direction: str = "inbound"

    @classmethod
    def from_payload(cls, payload: Mapping[str, object], *, timestamp: Optional[float] = None) -> "Observation":
        """Build an :class:`Observation` from a loosely typed mapping."""

        raw_timestamp = payload.get("timestamp")
        try:
            resolved_timestamp = float(raw_timestamp) if raw_timestamp is not None else None
        except (TypeError, ValueError):
            resolved_timestamp = None
        if resolved_timestamp is None:
            resolved_timestamp = timestamp if timestamp is not None else now_ms()

        flags_raw = payload.get("flags") or ()
        if isinstance(flags_raw, str):
            flags_raw = [part for part in flags_raw.replace(",", " ").split() if part]
        flags = tuple(str(flag).upper() for flag in flags_raw)

        payload_raw = payload.get("payload") or b""
        if isinstance(payload_raw, str):
            payload_bytes = payload_raw.encode("utf-8")
        elif isinstance(payload_raw, (bytes, bytearray)):
            payload_bytes = bytes(payload_raw)
        else:
            payload_bytes = bytes(int(value) & 0xFF for value in payload_raw)  # type: ignore[union-attr]

        direction = str(payload.get("direction") or "inbound").lower()
        if direction not in {"inbound", "outbound"}:
            direction = "inbound"

        return cls(
            id=str(payload.get("id") or new_id()),
            timestamp=resolved_timestamp,
            source_ip=str(payload.get("source_ip") or "0.0.0.0"),
            destination_ip=str(payload.get("destination_ip") or "0.0.0.0"),
            protocol=str(payload.get("protocol") or "OTHER").upper(),
            size=_coerce_int(payload.get("size")),
            source_port=_coerce_int(payload.get("source_port")),
            destination_port=_coerce_int(payload.get("destination_port")),
            flags=flags,
            ttl=_coerce_int(payload.get("ttl"), default=64),
            payload=payload_bytes,
            interface=str(payload.get("interface") or "eth0"),
            direction=direction,
        )

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "source_ip": self.source_ip,
            "destination_ip": self.destination_ip,
            "protocol": self.protocol,
            "size": self.size,
            "source_port": self.source_port,
            "destination_port": self.destination_port,
            "flags": list(self.flags),
            "ttl": self.ttl,
            "payload_length": len(self.payload),
            "interface": self.interface,
            "direction": self.direction,
        }


@dataclass
class TrafficStatistics:
    """Running counters for the current capture session."""

    total_packets: int = 0
    total_bytes: int = 0
    packets_per_second: float = 0.0
    bytes_per_second: float = 0.0
    protocol_distribution: Dict[str, int] = field(default_factory=dict)
    port_distribution: Dict[str, int] = field(default_factory=dict)

    def copy(self) -> "TrafficStatistics":
        return TrafficStatistics(
            total_packets=self.total_packets,
            total_bytes=self.total_bytes,
            packets_per_second=self.packets_per_second,
            bytes_per_second=self.bytes_per_second,
            protocol_distribution=dict(self.protocol_distribution),
            port_distribution=dict(self.port_distribution),
        )

    def as_dict(self) -> Dict[str, object]:
        return {
            "total_packets": self.total_packets,
            "total_bytes": self.total_bytes,
            "packets_per_second": self.packets_per_second,
            "bytes_per_second": self.bytes_per_second,
            "protocol_distribution": dict(self.protocol_distribution),
            "port_distribution": dict(self.port_distribution),
        }


@dataclass(frozen=True)
class FeatureVector:
    """Fixed-shape numeric description of one observation."""

    timestamp: float
    protocol: float
    packet_size: float
    source_port_category: float
    dest_port_category: float
    flags_vector: Tuple[float, ...]
    payload_entropy: float
    src_ip_entropy: float
    dst_ip_entropy: float
    is_intranet: float
    header_fields: Tuple[float, ...]
    inter_packet_time: float
    packet_ratio: float

    @classmethod
    def empty(cls, timestamp: float) -> "FeatureVector":
        return cls(
            timestamp=timestamp,
            protocol=0.0,
            packet_size=0.0,
            source_port_category=0.0,
            dest_port_category=0.0,
            flags_vector=(0.0,) * len(FLAG_NAMES),
            payload_entropy=0.0,
            src_ip_entropy=0.0,
            dst_ip_entropy=0.0,
            is_intranet=0.0,
            header_fields=(0.0, 0.0, 0.0, 0.0),
            inter_packet_time=0.0,
            packet_ratio=0.0,
        )

    def as_array(self) -> List[float]:
        """Flatten the vector in :data:`FEATURE_NAMES` order."""

        return [
            self.protocol,
            self.packet_size,
            self.source_port_category,
            self.dest_port_category,
            *self.flags_vector,
            self.payload_entropy,
            self.src_ip_entropy,
            self.dst_ip_entropy,
            self.is_intranet,
            *self.header_fields,
            self.inter_packet_time,
            self.packet_ratio,
        ]

    def as_dict(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "protocol": self.protocol,
            "packet_size": self.packet_size,
            "source_port_category": self.source_port_category,
            "dest_port_category": self.dest_port_category,
            "flags_vector": list(self.flags_vector),
            "payload_entropy": self.payload_entropy,
            "src_ip_entropy": self.src_ip_entropy,
            "dst_ip_entropy": self.dst_ip_entropy,
            "is_intranet": self.is_intranet,
            "header_fields": list(self.header_fields),
            "inter_packet_time": self.inter_packet_time,
            "packet_ratio": self.packet_ratio,
        }


@dataclass(frozen=True)
class Anomaly:
    """A scored deviation reported by the spiking network."""

    id: str
    timestamp: float
    confidence: float
    related_features: Tuple[str, ...]
    feature_vector: FeatureVector
    description: str

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "confidence": self.confidence,
            "related_features": list(self.related_features),
            "feature_vector": self.feature_vector.as_dict(),
            "description": self.description,
        }


@dataclass
class ThreatDetection:
    """A cluster of related anomalies promoted to a threat."""

    id: str
    timestamp: float
    severity: str
    confidence: float
    anomalies: List[str] = field(default_factory=list)
    source_ips: List[str] = field(default_factory=list)
    destination_ips: List[str] = field(default_factory=list)
    ports: List[int] = field(default_factory=list)
    protocols: List[str] = field(default_factory=list)
    description: str = ""
    recommended_action: str = ""
    is_zero_day: bool = False

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "severity": self.severity,
            "confidence": self.confidence,
            "anomalies": list(self.anomalies),
            "source_ips": list(self.source_ips),
            "destination_ips": list(self.destination_ips),
            "ports": list(self.ports),
            "protocols": list(self.protocols),
            "description": self.description,
            "recommended_action": self.recommended_action,
            "is_zero_day": self.is_zero_day,
        }


@dataclass(frozen=True)
class ResponseAction:
    """Recommended mitigation for a threat."""

    id: str
    threat_id: str
    action: str
    target: str
    parameters: Mapping[str, object]
    automated_execution_allowed: bool
    description: str

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "threat_id": self.threat_id,
            "action": self.action,
            "target": self.target,
            "parameters": dict(self.parameters),
            "automated_execution_allowed": self.automated_execution_allowed,
            "description": self.description,
        }


@dataclass
class Alert:
    """Operator-facing notification."""

    id: str
    timestamp: float
    title: str
    message: str
    severity: str
    source: str
    related_entity_id: Optional[str] = None
    acknowledged: bool = False
    metadata: Dict[str, object] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "title": self.title,
            "message": self.message,
            "severity": self.severity,
            "source": self.source,
            "related_entity_id": self.related_entity_id,
            "acknowledged": self.acknowledged,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class ActionResult:
    """Outcome of executing (or failing to find) a response action."""

    id: str
    action_id: str
    success: bool
    timestamp: float
    message: str
    data: Optional[Mapping[str, object]] = None

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "id": self.id,
            "action_id": self.action_id,
            "success": self.success,
            "timestamp": self.timestamp,
            "message": self.message,
        }
        if self.data is not None:
            payload["data"] = dict(self.data)
        return payload


@dataclass
class PipelineStatus:
    """Counters describing the running pipeline."""

    is_capturing: bool = False
    is_processing: bool = False
    is_learning: bool = True
    capture_start_time: Optional[float] = None
    packets_processed: int = 0
    anomalies_detected: int = 0
    threats_identified: int = 0
    actions_recommended: int = 0
    last_update_time: float = 0.0

    def copy(self) -> "PipelineStatus":
        return PipelineStatus(**self.as_dict())  # type: ignore[arg-type]

    def as_dict(self) -> Dict[str, object]:
        return {
            "is_capturing": self.is_capturing,
            "is_processing": self.is_processing,
            "is_learning": self.is_learning,
            "capture_start_time": self.capture_start_time,
            "packets_processed": self.packets_processed,
            "anomalies_detected": self.anomalies_detected,
            "threats_identified": self.threats_identified,
            "actions_recommended": self.actions_recommended,
            "last_update_time": self.last_update_time,
        }


def _coerce_int(value: object, *, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
