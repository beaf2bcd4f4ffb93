from __future__ import annotations

import json
import sys
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from neuroguard.analysis import OllamaTextGenerator, TextGenerationError, ThreatAnalyst, threat_prompt
from neuroguard.state import ThreatDetection


def make_threat(severity: str = "high", threat_id: str = "t-1") -> ThreatDetection:
    return ThreatDetection(
        id=threat_id,
        timestamp=0.0,
        severity=severity,
        confidence=0.9,
        anomalies=["a-1", "a-2"],
        source_ips=["198.51.100.4", "198.51.100.9"],
        destination_ips=["10.0.0.5"],
        ports=[22],
        protocols=["TCP"],
        description="Potential zero-day threat detected with 90% confidence.",
        recommended_action="Block suspicious traffic and escalate to security team.",
    )


def mock_client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class RecordingGenerator:
    def __init__(self, reply: str = "", error: Exception = None) -> None:
        self.reply = reply
        self.error = error
        self.prompts = []

    def generate(self, prompt, *, system_prompt=None, temperature=0.3):
        self.prompts.append((prompt, system_prompt, temperature))
        if self.error is not None:
            raise self.error
        return self.reply


def test_ollama_generator_posts_prompt():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"response": "  SSH brute force.  "})

    generator = OllamaTextGenerator("http://ollama:11434/api/", "mistral", client=mock_client(handler))
    text = generator.generate("hello", system_prompt="be terse", temperature=0.2)

    assert text == "SSH brute force."
    assert seen["url"] == "http://ollama:11434/api/generate"
    assert seen["body"] == {
        "model": "mistral",
        "prompt": "hello",
        "stream": False,
        "options": {"temperature": 0.2},
        "system": "be terse",
    }


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "model not loaded"}),
        httpx.Response(200, content=b"not json"),
        httpx.Response(200, json={"response": "   "}),
        httpx.Response(200, json=["unexpected"]),
    ],
)
def test_ollama_generator_wraps_failures(response):
    generator = OllamaTextGenerator(client=mock_client(lambda request: response))
    with pytest.raises(TextGenerationError):
        generator.generate("hello")


def test_ollama_generator_wraps_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    generator = OllamaTextGenerator(client=mock_client(handler))
    with pytest.raises(TextGenerationError):
        generator.generate("hello")


def test_generated_briefing_extracts_recommendations(clock):
    generator = RecordingGenerator("Likely SSH scanning.\n- Block 198.51.100.4\n- Rotate credentials\n")
    analyst = ThreatAnalyst(generator, clock=clock)

    briefing = analyst.brief(make_threat())

    assert briefing.generated
    assert briefing.threat_level == "high"
    assert briefing.recommendations == ["Block 198.51.100.4", "Rotate credentials"]
    assert briefing.related_threats == ["t-1"]
    assert briefing.timestamp == clock.now
    prompt, system_prompt, temperature = generator.prompts[0]
    assert "Source IPs: 198.51.100.4, 198.51.100.9" in prompt
    assert system_prompt
    assert temperature == 0.3


def test_briefing_without_bullets_uses_threat_recommendation(clock):
    analyst = ThreatAnalyst(RecordingGenerator("Nothing conclusive."), clock=clock)
    briefing = analyst.brief(make_threat())
    assert briefing.recommendations == ["Block suspicious traffic and escalate to security team."]


def test_generation_failure_falls_back(clock, caplog):
    analyst = ThreatAnalyst(RecordingGenerator(error=TextGenerationError("offline")), clock=clock)
    briefing = analyst.brief(make_threat())

    assert not briefing.generated
    assert briefing.title == "HIGH threat briefing"
    assert "2 anomalies" in briefing.summary
    assert "198.51.100.4, 198.51.100.9" in briefing.summary
    assert "fell back to template" in caplog.text


def test_unexpected_generator_errors_fall_back(clock, caplog):
    analyst = ThreatAnalyst(RecordingGenerator(error=KeyError("response")), clock=clock)

    briefing = analyst.brief(make_threat())
    report = analyst.status_report([make_threat()], [])

    assert not briefing.generated
    assert briefing.title == "HIGH threat briefing"
    assert report.summary.startswith("Current security status: HIGH.")
    assert "Status report fell back to template" in caplog.text


def test_analyst_without_generator_uses_template(clock):
    briefing = ThreatAnalyst(clock=clock).brief(make_threat("medium"))
    assert not briefing.generated
    assert briefing.threat_level == "medium"


def test_status_report_counts_severities(clock):
    analyst = ThreatAnalyst(clock=clock)
    threats = [make_threat("medium", "t-1"), make_threat("high", "t-2"), make_threat("medium", "t-3")]

    report = analyst.status_report(threats, [])

    assert report.threat_level == "high"
    assert report.summary.startswith("Current security status: HIGH. 3 threats")
    assert report.recommendations == ["Critical: 0", "High: 1", "Medium: 2", "Low: 0"]
    assert report.related_threats == ["t-1", "t-2", "t-3"]


def test_quiet_status_report_skips_generation(clock):
    generator = RecordingGenerator("unused")
    report = ThreatAnalyst(generator, clock=clock).status_report([], [])
    assert report.threat_level == "low"
    assert generator.prompts == []


def test_status_report_uses_generated_text(clock):
    generator = RecordingGenerator("All quiet apart from SSH noise.")
    report = ThreatAnalyst(generator, clock=clock).status_report([make_threat()], [])
    assert report.summary == "All quiet apart from SSH noise."
    assert generator.prompts[0][2] == 0.4


def test_threat_prompt_lists_context():
    prompt = threat_prompt(make_threat())
    assert "Confidence: 90.0%" in prompt
    assert "Ports: 22" in prompt
    assert "Zero-day candidate: no" in prompt
