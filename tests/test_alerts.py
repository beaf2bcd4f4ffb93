from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from neuroguard.alerts import AlertDispatcher, action_label
from neuroguard.config import AlertConfig
from neuroguard.state import Anomaly, FeatureVector, ResponseAction, ThreatDetection


def make_threat(severity: str, confidence: float = 0.8) -> ThreatDetection:
    return ThreatDetection(
        id=f"threat-{severity}",
        timestamp=0.0,
        severity=severity,
        confidence=confidence,
        anomalies=["a-1"],
        source_ips=["203.0.113.7"],
        protocols=["TCP"],
        description=f"{severity} threat",
        is_zero_day=confidence > 0.9,
    )


def make_action(action: str = "block", *, automated: bool = True, action_id: str = "act-1") -> ResponseAction:
    return ResponseAction(
        id=action_id,
        threat_id="threat-high",
        action=action,
        target="203.0.113.7",
        parameters={"duration": "24h", "scope": "subnet"},
        automated_execution_allowed=automated,
        description="HIGH - test",
    )


@pytest.fixture
def dispatcher(clock, fixed_random, scheduler) -> AlertDispatcher:
    return AlertDispatcher(rng=fixed_random, clock=clock, scheduler=scheduler)


def test_threat_alerts_respect_severity_floor(clock, fixed_random, scheduler):
    dispatcher = AlertDispatcher(
        AlertConfig(min_severity_to_alert="high"), rng=fixed_random, clock=clock, scheduler=scheduler
    )
    assert dispatcher.process_threat_detection(make_threat("medium")) is None
    assert dispatcher.all_alerts() == []

    high = dispatcher.process_threat_detection(make_threat("high", 0.9))
    critical = dispatcher.process_threat_detection(make_threat("critical", 0.97))

    assert high.title == "HIGH Threat Detected"
    assert high.severity == "critical"
    assert critical.severity == "critical"
    assert high.related_entity_id == "threat-high"
    assert high.metadata["source_ips"] == ["203.0.113.7"]
    assert len(dispatcher.all_alerts()) == 2


def test_medium_threat_is_a_warning(dispatcher):
    alert = dispatcher.process_threat_detection(make_threat("medium"))
    assert alert.severity == "warning"
    assert alert.source == "threat"
    assert alert.message == "medium threat"


def test_only_high_confidence_anomalies_alert(dispatcher, clock):
    def anomaly(confidence: float) -> Anomaly:
        return Anomaly(
            id=f"anomaly-{confidence}",
            timestamp=clock.now,
            confidence=confidence,
            related_features=("input-1",),
            feature_vector=FeatureVector.empty(clock.now),
            description="",
        )

    assert dispatcher.process_anomaly(anomaly(0.9)) is None
    alert = dispatcher.process_anomaly(anomaly(0.93))
    assert alert.title == "High-Confidence Anomaly Detected"
    assert alert.message == "Network anomaly detected with 93% confidence."
    assert alert.severity == "warning"


def test_manual_action_raises_action_required_alert(dispatcher):
    published = []
    dispatcher.subscribe_to_actions(published.append)
    action = make_action()

    dispatcher.process_response_action(action)

    assert published == [action]
    assert dispatcher.pending_actions() == [action]
    (alert,) = dispatcher.all_alerts()
    assert alert.title == "Action Required: Block Traffic"
    assert alert.related_entity_id == action.id
    assert dispatcher.executed_actions() == []


def test_auto_execution_runs_allowed_actions(clock, fixed_random, scheduler):
    dispatcher = AlertDispatcher(
        AlertConfig(auto_execute_actions=True), rng=fixed_random, clock=clock, scheduler=scheduler
    )
    dispatcher.process_response_action(make_action())

    assert dispatcher.pending_actions() == []
    (result,) = dispatcher.executed_actions()
    assert result.success
    assert result.message == "Successfully executed block on 203.0.113.7"
    assert [alert.title for alert in dispatcher.all_alerts()] == ["Action Completed"]


def test_auto_execution_skips_restricted_actions(clock, fixed_random, scheduler):
    dispatcher = AlertDispatcher(
        AlertConfig(auto_execute_actions=True), rng=fixed_random, clock=clock, scheduler=scheduler
    )
    dispatcher.process_response_action(make_action("isolate", automated=False))

    assert len(dispatcher.pending_actions()) == 1
    assert dispatcher.all_alerts()[0].title == "Action Required: Isolate System"


def test_execution_can_fail(dispatcher, fixed_random):
    fixed_random.value = 0.05
    dispatcher.process_response_action(make_action())
    result = dispatcher.execute_action("act-1")

    assert not result.success
    assert result.message == "Failed to execute block on 203.0.113.7"
    failed = dispatcher.all_alerts()[-1]
    assert failed.title == "Action Failed"
    assert failed.severity == "error"


def test_unknown_action_yields_failed_result(dispatcher):
    results = []
    dispatcher.subscribe_to_action_results(results.append)

    result = dispatcher.execute_action("missing")

    assert not result.success
    assert result.message == "Action not found"
    assert results == [result]
    assert dispatcher.executed_actions() == []


def test_action_executes_only_once(dispatcher):
    dispatcher.process_response_action(make_action())
    assert dispatcher.execute_action("act-1").success
    assert dispatcher.execute_action("act-1").message == "Action not found"


def test_acknowledge_is_idempotent(dispatcher):
    active_snapshots = []
    dispatcher.subscribe_to_active_alerts(active_snapshots.append)
    alert = dispatcher.process_threat_detection(make_threat("high", 0.9))

    assert dispatcher.acknowledge_alert(alert.id)
    assert dispatcher.acknowledge_alert(alert.id)
    assert not dispatcher.acknowledge_alert("unknown")
    assert dispatcher.active_alerts() == []
    assert dispatcher.all_alerts()[0].acknowledged
    assert active_snapshots[0] == []
    assert active_snapshots[-1] == []


def test_alert_store_evicts_oldest(clock, fixed_random, scheduler):
    dispatcher = AlertDispatcher(
        AlertConfig(max_alerts_to_store=3), rng=fixed_random, clock=clock, scheduler=scheduler
    )
    alerts = [dispatcher.process_threat_detection(make_threat("high", 0.9)) for _ in range(5)]

    assert [alert.id for alert in dispatcher.all_alerts()] == [alert.id for alert in alerts[2:]]
    assert scheduler.jobs[0].cancelled
    assert scheduler.jobs[1].cancelled
    assert not scheduler.jobs[2].cancelled


def test_auto_acknowledge_timer(dispatcher, scheduler):
    alert = dispatcher.process_threat_detection(make_threat("high", 0.9))
    (job,) = scheduler.jobs
    assert job.delay_ms == 86_400_000

    job.fire()

    assert dispatcher.all_alerts()[0].id == alert.id
    assert dispatcher.active_alerts() == []


def test_manual_acknowledge_cancels_timer(dispatcher, scheduler):
    alert = dispatcher.process_threat_detection(make_threat("high", 0.9))
    dispatcher.acknowledge_alert(alert.id)
    assert scheduler.jobs[0].cancelled


def test_timers_fired_after_shutdown_do_nothing(dispatcher, scheduler):
    dispatcher.process_threat_detection(make_threat("high", 0.9))
    dispatcher.shutdown()
    assert scheduler.jobs[0].cancelled

    scheduler.fire_all()
    assert len(dispatcher.active_alerts()) == 1

    dispatcher.process_threat_detection(make_threat("high", 0.9))
    assert len(scheduler.jobs) == 1


def test_zero_delay_disables_auto_acknowledge(clock, fixed_random, scheduler):
    dispatcher = AlertDispatcher(
        AlertConfig(auto_acknowledge_after_ms=0), rng=fixed_random, clock=clock, scheduler=scheduler
    )
    dispatcher.process_threat_detection(make_threat("high", 0.9))
    assert scheduler.jobs == []


def test_notifier_called_when_sound_enabled(clock, fixed_random, scheduler):
    notified = []
    dispatcher = AlertDispatcher(rng=fixed_random, clock=clock, scheduler=scheduler, notifier=notified.append)
    alert = dispatcher.process_threat_detection(make_threat("high", 0.9))
    assert notified == [alert]

    dispatcher.update_config(notification_sound=False)
    dispatcher.process_threat_detection(make_threat("high", 0.9))
    assert notified == [alert]


def test_update_config_resizes_store(dispatcher, scheduler):
    alerts = [dispatcher.process_threat_detection(make_threat("high", 0.9)) for _ in range(4)]
    dispatcher.update_config(max_alerts_to_store=2)
    assert [alert.id for alert in dispatcher.all_alerts()] == [alert.id for alert in alerts[2:]]
    assert [job.cancelled for job in scheduler.jobs] == [True, True, False, False]
    with pytest.raises(ValueError):
        dispatcher.update_config(volume=11)


def test_action_labels():
    assert action_label("isolate") == "Isolate System"
    assert action_label("quarantine") == "Quarantine"
