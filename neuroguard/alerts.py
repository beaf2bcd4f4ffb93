"""Alert generation and response-action tracking."""

from __future__ import annotations

import logging
import random
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

from .config import AlertConfig, apply_changes
from .state import (
    ActionResult,
    Alert,
    Anomaly,
    ResponseAction,
    ThreatDetection,
    now_ms,
    severity_level,
)
from .streams import BehaviorSubject, Observer, Subject, Subscription, new_id

logger = logging.getLogger(__name__)

RESULT_HISTORY = 100
ANOMALY_ALERT_CONFIDENCE = 0.9
ACTION_FAILURE_RATE = 0.1

ALERT_SEVERITY_FOR_THREAT = {
    "critical": "critical",
    "high": "critical",
    "medium": "warning",
    "low": "info",
}

ACTION_LABELS = {
    "monitor": "Monitor Traffic",
    "alert": "Security Alert",
    "block": "Block Traffic",
    "isolate": "Isolate System",
    "analyze": "Deep Analysis",
}


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]
Notifier = Callable[[Alert], None]


def thread_scheduler(delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
    """Run ``callback`` once on a daemon timer thread after ``delay_ms``."""

    timer = threading.Timer(delay_ms / 1000.0, callback)
    timer.daemon = True
    timer.start()
    return timer


def action_label(action: str) -> str:
    return ACTION_LABELS.get(action, action[:1].upper() + action[1:])


class AlertDispatcher:
    """Turns threats, anomalies and actions into operator alerts."""

    def __init__(
        self,
        config: Optional[AlertConfig] = None,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = now_ms,
        scheduler: Scheduler = thread_scheduler,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.config = config or AlertConfig()
        self._rng = rng or random.Random()
        self._clock = clock
        self._scheduler = scheduler
        self._notifier = notifier
        self._lock = threading.RLock()
        self._closed = False

        self._alerts: Deque[Alert] = deque(maxlen=self.config.max_alerts_to_store)
        self._pending: Dict[str, ResponseAction] = {}
        self._results: Deque[ActionResult] = deque(maxlen=RESULT_HISTORY)
        self._timers: Dict[str, TimerHandle] = {}

        self._alert_subject: Subject[Alert] = Subject()
        self._action_subject: Subject[ResponseAction] = Subject()
        self._result_subject: Subject[ActionResult] = Subject()
        self._active_subject: BehaviorSubject[List[Alert]] = BehaviorSubject([])

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------
    def process_threat_detection(self, threat: ThreatDetection) -> Optional[Alert]:
        if severity_level(threat.severity) < severity_level(self.config.min_severity_to_alert):
            logger.debug("Threat %s below alert floor (%s)", threat.id, threat.severity)
            return None
        return self._create_alert(
            title=f"{threat.severity.upper()} Threat Detected",
            message=threat.description,
            severity=ALERT_SEVERITY_FOR_THREAT.get(threat.severity, "info"),
            source="threat",
            related_entity_id=threat.id,
            metadata={
                "confidence": threat.confidence,
                "is_zero_day": threat.is_zero_day,
                "protocols": list(threat.protocols),
                "source_ips": list(threat.source_ips),
                "destination_ips": list(threat.destination_ips),
            },
        )

    def process_anomaly(self, anomaly: Anomaly) -> Optional[Alert]:
        if anomaly.confidence <= ANOMALY_ALERT_CONFIDENCE:
            return None
        return self._create_alert(
            title="High-Confidence Anomaly Detected",
            message=f"Network anomaly detected with {round(anomaly.confidence * 100)}% confidence.",
            severity="warning",
            source="anomaly",
            related_entity_id=anomaly.id,
            metadata={
                "confidence": anomaly.confidence,
                "related_features": list(anomaly.related_features),
            },
        )

    def process_response_action(self, action: ResponseAction) -> None:
        with self._lock:
            self._pending[action.id] = action
        self._action_subject.publish(action)

        if self.config.auto_execute_actions and action.automated_execution_allowed:
            self.execute_action(action.id)
            return

        self._create_alert(
            title=f"Action Required: {action_label(action.action)}",
            message=action.description,
            severity="info",
            source="system",
            related_entity_id=action.id,
            metadata={
                "threat_id": action.threat_id,
                "action": action.action,
                "target": action.target,
                "parameters": dict(action.parameters),
            },
        )

    def execute_action(self, action_id: str) -> ActionResult:
        """Execute a pending action; unknown ids yield a failed result."""

        with self._lock:
            action = self._pending.pop(action_id, None)

        if action is None:
            result = ActionResult(
                id=new_id(),
                action_id=action_id,
                success=False,
                timestamp=self._clock(),
                message="Action not found",
            )
            self._result_subject.publish(result)
            return result

        success = self._rng.random() > ACTION_FAILURE_RATE
        verb = "Successfully executed" if success else "Failed to execute"
        result = ActionResult(
            id=new_id(),
            action_id=action.id,
            success=success,
            timestamp=self._clock(),
            message=f"{verb} {action.action} on {action.target}",
            data={
                "action_type": action.action,
                "target": action.target,
                "parameters": dict(action.parameters),
            },
        )
        with self._lock:
            self._results.append(result)
        if success:
            logger.info("Executed %s on %s", action.action, action.target)
        else:
            logger.warning("Execution of %s on %s failed", action.action, action.target)
        self._result_subject.publish(result)

        self._create_alert(
            title="Action Completed" if success else "Action Failed",
            message=result.message,
            severity="info" if success else "error",
            source="system",
            related_entity_id=action.id,
            metadata={
                "threat_id": action.threat_id,
                "action_type": action.action,
                "target": action.target,
                "success": success,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Alert bookkeeping
    # ------------------------------------------------------------------
    def _create_alert(
        self,
        *,
        title: str,
        message: str,
        severity: str,
        source: str,
        related_entity_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> Alert:
        alert = Alert(
            id=new_id(),
            timestamp=self._clock(),
            title=title,
            message=message,
            severity=severity,
            source=source,
            related_entity_id=related_entity_id,
            metadata=metadata,
        )
        with self._lock:
            if len(self._alerts) == self._alerts.maxlen:
                self._cancel_timer(self._alerts[0].id)
            self._alerts.append(alert)
            active = [item for item in self._alerts if not item.acknowledged]

        self._alert_subject.publish(alert)
        self._active_subject.publish(active)

        if self.config.notification_sound and self._notifier is not None:
            try:
                self._notifier(alert)
            except Exception:
                logger.exception("Alert notifier failed for %s", alert.id)

        delay = self.config.auto_acknowledge_after_ms
        if delay > 0:
            self._schedule_acknowledge(alert.id, delay)
        return alert

    def _schedule_acknowledge(self, alert_id: str, delay_ms: float) -> None:
        with self._lock:
            if self._closed:
                return
            handle = self._scheduler(delay_ms, lambda: self._auto_acknowledge(alert_id))
            self._timers[alert_id] = handle

    def _auto_acknowledge(self, alert_id: str) -> None:
        with self._lock:
            self._timers.pop(alert_id, None)
            if self._closed:
                return
        self.acknowledge_alert(alert_id)

    def _cancel_timer(self, alert_id: str) -> None:
        handle = self._timers.pop(alert_id, None)
        if handle is not None:
            handle.cancel()

    def acknowledge_alert(self, alert_id: str) -> bool:
        with self._lock:
            alert = next((item for item in self._alerts if item.id == alert_id), None)
            if alert is None:
                return False
            alert.acknowledged = True
            self._cancel_timer(alert_id)
            active = [item for item in self._alerts if not item.acknowledged]
        self._active_subject.publish(active)
        return True

    def shutdown(self) -> None:
        """Cancel pending auto-acknowledge timers; later firings are no-ops."""

        with self._lock:
            self._closed = True
            timers, self._timers = list(self._timers.values()), {}
        for handle in timers:
            handle.cancel()

    def update_config(self, **changes: Any) -> AlertConfig:
        with self._lock:
            self.config = apply_changes(self.config, changes)
            if self.config.max_alerts_to_store != self._alerts.maxlen:
                overflow = len(self._alerts) - self.config.max_alerts_to_store
                for alert in list(self._alerts)[:max(overflow, 0)]:
                    self._cancel_timer(alert.id)
                self._alerts = deque(self._alerts, maxlen=self.config.max_alerts_to_store)
        logger.info("Alert configuration updated: %s", changes)
        return self.config

    # ------------------------------------------------------------------
    # Pull / push surface
    # ------------------------------------------------------------------
    def all_alerts(self) -> List[Alert]:
        with self._lock:
            return list(self._alerts)

    def active_alerts(self) -> List[Alert]:
        with self._lock:
            return [alert for alert in self._alerts if not alert.acknowledged]

    def pending_actions(self) -> List[ResponseAction]:
        with self._lock:
            return list(self._pending.values())

    def executed_actions(self) -> List[ActionResult]:
        with self._lock:
            return list(self._results)

    def subscribe_to_alerts(self, callback: Observer) -> Subscription:
        return self._alert_subject.subscribe(callback)

    def subscribe_to_active_alerts(self, callback: Observer) -> Subscription:
        return self._active_subject.subscribe(callback)

    def subscribe_to_actions(self, callback: Observer) -> Subscription:
        return self._action_subject.subscribe(callback)

    def subscribe_to_action_results(self, callback: Observer) -> Subscription:
        return self._result_subject.subscribe(callback)


__all__ = ["AlertDispatcher", "action_label", "thread_scheduler"]
