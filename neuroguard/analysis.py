"""Narrative threat briefings through an external text-generation service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

import httpx

from .state import Anomaly, ThreatDetection, now_ms
from .streams import new_id

logger = logging.getLogger(__name__)

SECURITY_SYSTEM_PROMPT = (
    "You are an advanced AI security analyst specializing in network security and threat intelligence. "
    "Analyze network anomalies, identify potential threats and provide precise, technical and actionable "
    "insights with a severity assessment and clear recommendations."
)

SEVERITY_ORDER = ("critical", "high", "medium", "low")


class TextGenerationError(RuntimeError):
    """The text-generation backend failed or returned an unusable payload."""


class TextGenerator(Protocol):
    def generate(self, prompt: str, *, system_prompt: Optional[str] = None, temperature: float = 0.3) -> str:
        ...


class OllamaTextGenerator:
    """Client for an Ollama-compatible ``/generate`` endpoint."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434/api",
        model: str = "llama3",
        *,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._client = client or httpx.Client(timeout=timeout)

    def generate(self, prompt: str, *, system_prompt: Optional[str] = None, temperature: float = 0.3) -> str:
        body: Dict[str, object] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature},
        }
        if system_prompt:
            body["system"] = system_prompt
        try:
            response = self._client.post(f"{self.base_url}/generate", json=body)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise TextGenerationError(f"Text generation request failed: {exc}") from exc
        except ValueError as exc:
            raise TextGenerationError("Text generation returned invalid JSON") from exc

        text = payload.get("response") if isinstance(payload, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise TextGenerationError("Text generation returned no response text")
        return text.strip()

    def close(self) -> None:
        self._client.close()


@dataclass
class ThreatBriefing:
    id: str
    timestamp: float
    title: str
    summary: str
    threat_level: str
    recommendations: List[str] = field(default_factory=list)
    related_threats: List[str] = field(default_factory=list)
    generated: bool = False

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "title": self.title,
            "summary": self.summary,
            "threat_level": self.threat_level,
            "recommendations": list(self.recommendations),
            "related_threats": list(self.related_threats),
            "generated": self.generated,
        }


class ThreatAnalyst:
    """Builds briefings; any generation failure falls back to a canned briefing."""

    def __init__(self, generator: Optional[TextGenerator] = None, *, clock=now_ms) -> None:
        self._generator = generator
        self._clock = clock

    def brief(self, threat: ThreatDetection) -> ThreatBriefing:
        if self._generator is not None:
            try:
                text = self._generator.generate(
                    threat_prompt(threat), system_prompt=SECURITY_SYSTEM_PROMPT, temperature=0.3
                )
            except Exception as exc:
                logger.warning("Briefing for threat %s fell back to template: %s", threat.id, exc)
            else:
                return ThreatBriefing(
                    id=new_id(),
                    timestamp=self._clock(),
                    title=f"{threat.severity.title()} threat analysis",
                    summary=text,
                    threat_level=threat.severity,
                    recommendations=_recommendations(text) or [threat.recommended_action],
                    related_threats=[threat.id],
                    generated=True,
                )
        return self.fallback_briefing(threat)

    def fallback_briefing(self, threat: ThreatDetection) -> ThreatBriefing:
        observed = ", ".join(threat.source_ips[:3]) or "unknown sources"
        return ThreatBriefing(
            id=new_id(),
            timestamp=self._clock(),
            title=f"{threat.severity.upper()} threat briefing",
            summary=(
                f"{threat.description} Built from {len(threat.anomalies)} anomalies "
                f"involving {observed}."
            ),
            threat_level=threat.severity,
            recommendations=[threat.recommended_action] if threat.recommended_action else [],
            related_threats=[threat.id],
        )

    def status_report(self, threats: Sequence[ThreatDetection], anomalies: Sequence[Anomaly]) -> ThreatBriefing:
        """Overall security posture for recent threats and anomalies."""

        counts = {severity: 0 for severity in SEVERITY_ORDER}
        for threat in threats:
            counts[threat.severity] = counts.get(threat.severity, 0) + 1
        level = next((severity for severity in SEVERITY_ORDER[:-1] if counts[severity]), "low")
        summary = (
            f"Current security status: {level.upper()}. {len(threats)} threats and "
            f"{len(anomalies)} anomalies detected recently."
        )

        if self._generator is not None and threats:
            try:
                text = self._generator.generate(
                    status_prompt(threats, anomalies), system_prompt=SECURITY_SYSTEM_PROMPT, temperature=0.4
                )
            except Exception as exc:
                logger.warning("Status report fell back to template: %s", exc)
            else:
                summary = text

        return ThreatBriefing(
            id=new_id(),
            timestamp=self._clock(),
            title="Security Status Report",
            summary=summary,
            threat_level=level,
            recommendations=[
                f"{severity.title()}: {counts[severity]}" for severity in SEVERITY_ORDER
            ],
            related_threats=[threat.id for threat in threats],
        )


def threat_prompt(threat: ThreatDetection) -> str:
    lines = [
        "Analyze the following network threat detected by a spiking neural network anomaly detector.",
        f"Severity: {threat.severity}",
        f"Confidence: {threat.confidence * 100:.1f}%",
        f"Zero-day candidate: {'yes' if threat.is_zero_day else 'no'}",
        f"Contributing anomalies: {len(threat.anomalies)}",
        f"Source IPs: {', '.join(threat.source_ips) or 'n/a'}",
        f"Destination IPs: {', '.join(threat.destination_ips) or 'n/a'}",
        f"Ports: {', '.join(str(port) for port in threat.ports) or 'n/a'}",
        f"Protocols: {', '.join(threat.protocols) or 'n/a'}",
        f"Description: {threat.description}",
        "Summarize the likely attack, then list recommended actions as lines starting with '- '.",
    ]
    return "\n".join(lines)


def status_prompt(threats: Sequence[ThreatDetection], anomalies: Sequence[Anomaly]) -> str:
    lines = [f"Write a short security status briefing for {len(threats)} threats and {len(anomalies)} anomalies."]
    for threat in threats[:10]:
        lines.append(f"- {threat.severity} ({threat.confidence:.2f}): {threat.description}")
    return "\n".join(lines)


def _recommendations(text: str) -> List[str]:
    return [line.strip()[2:].strip() for line in text.splitlines() if line.strip().startswith("- ")]


__all__ = [
    "OllamaTextGenerator",
    "TextGenerationError",
    "TextGenerator",
    "ThreatAnalyst",
    "ThreatBriefing",
]
