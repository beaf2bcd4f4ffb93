"""Presentation-friendly projection of detector and network state."""

from __future__ import annotations

import math
from typing import Dict, List, Optional

from .detector import AnomalyDetector
from .network import NetworkSnapshot, Neuron, NeuronPhase, Synapse
from .streams import BehaviorSubject, Observer, Subject, Subscription

ACTIVE_CONNECTION_MS = 200.0
RECENT_SPIKE_MS = 500.0

LAYER_BANDS = {
    "input": (-300.0, -200.0, 300.0),
    "output": (300.0, 400.0, 150.0),
}
HIDDEN_BAND = (-100.0, 200.0, 250.0)
HIDDEN_SPREAD_STEP = 50.0


def neuron_position(neuron: Neuron, hidden_layers: int) -> Dict[str, float]:
    """Place ``neuron`` on a circle in its layer's depth band."""

    if neuron.layer == "hidden":
        low, high, spread = HIDDEN_BAND
        fraction = (neuron.layer_index + 0.5) / max(hidden_layers, 1)
        z = low + (high - low) * fraction
        radius = max(spread - HIDDEN_SPREAD_STEP * neuron.layer_index, HIDDEN_SPREAD_STEP)
    else:
        low, high, radius = LAYER_BANDS.get(neuron.layer, LAYER_BANDS["input"])
        z = (low + high) / 2.0
    index = int(neuron.id.rsplit("-", 1)[-1])
    angle = (index / 10.0) * math.pi * 2.0
    return {
        "x": round(math.cos(angle) * radius, 3),
        "y": round(math.sin(angle) * radius, 3),
        "z": round(z, 3),
    }


class VisualizationAdapter:
    """Maps detector and network state to dashboard-shaped dictionaries.

    Holds no state of its own beyond the last projected snapshot.
    """

    def __init__(self, detector: AnomalyDetector) -> None:
        self._detector = detector
        self._state: BehaviorSubject[Optional[Dict[str, object]]] = BehaviorSubject(None)
        self._anomalies: Subject = Subject()
        self._threats: Subject = Subject()
        self._status: Subject = Subject()

        detector.subscribe_to_network_state(self._on_network_state)
        detector.subscribe_to_anomalies(self._anomalies.publish)
        detector.subscribe_to_threats(self._threats.publish)
        detector.subscribe_to_status(self._status.publish)

    def _on_network_state(self, snapshot: NetworkSnapshot) -> None:
        self._state.publish(self.visual_state(now=snapshot.timestamp))

    def visual_state(self, now: Optional[float] = None) -> Dict[str, object]:
        network = self._detector.network
        if now is None:
            now = network.last_update_time
        hidden_layers = len(network.config.hidden_layers)
        neurons = [self._visual_neuron(neuron, hidden_layers, now) for layer in network.layers for neuron in layer]
        connections = [self._visual_connection(synapse, now) for synapse in network.synapses()]
        return {
            "neurons": neurons,
            "connections": connections,
            "anomaly_score": network.anomaly_score,
            "is_analysis_active": self._detector.status().is_processing,
            "active_threats": self._detector.active_threat_count(),
        }

    def _visual_neuron(self, neuron: Neuron, hidden_layers: int, now: float) -> Dict[str, object]:
        phase = neuron.phase(now)
        if phase in (NeuronPhase.FIRING, NeuronPhase.REFRACTORY):
            state = "refractory"
        elif neuron.potential > neuron.threshold * 0.6:
            state = "active"
        else:
            state = "inactive"
        recent = len(neuron.spikes_within(now, RECENT_SPIKE_MS))
        anomaly_level = recent / 10 if recent > 3 else 0.0
        layer = neuron.layer if neuron.layer != "hidden" else f"hidden{neuron.layer_index + 1}"
        return {
            "id": neuron.id,
            **neuron_position(neuron, hidden_layers),
            "layer": layer,
            "size": 1.5 if anomaly_level > 0.5 else 1.0,
            "connections": [synapse.id for synapse in neuron.synapses],
            "state": state,
            "phase": phase.value,
            "activation_level": neuron.potential / neuron.threshold if neuron.threshold else 0.0,
            "anomaly_level": anomaly_level,
        }

    @staticmethod
    def _visual_connection(synapse: Synapse, now: float) -> Dict[str, object]:
        return {
            "id": synapse.id,
            "source_id": synapse.source_id,
            "target_id": synapse.target_id,
            "strength": synapse.weight,
            "active": synapse.last_activity > now - ACTIVE_CONNECTION_MS,
            "highlighted": synapse.plasticity_enabled,
        }

    def neural_activity(self) -> Dict[str, object]:
        state = self._state.value or self.visual_state()
        neurons: List[Dict[str, object]] = state["neurons"]  # type: ignore[assignment]
        return {
            "anomaly_score": state["anomaly_score"],
            "active_neurons": sum(1 for neuron in neurons if neuron["state"] == "active"),
            "total_neurons": len(neurons),
            "is_analysis_active": state["is_analysis_active"],
            "active_threats": state["active_threats"],
        }

    def subscribe_to_visual_state(self, callback: Observer) -> Subscription:
        def _skip_empty(state: Optional[Dict[str, object]]) -> None:
            if state is not None:
                callback(state)

        return self._state.subscribe(_skip_empty)

    def subscribe_to_anomalies(self, callback: Observer) -> Subscription:
        return self._anomalies.subscribe(callback)

    def subscribe_to_threats(self, callback: Observer) -> Subscription:
        return self._threats.subscribe(callback)

    def subscribe_to_status(self, callback: Observer) -> Subscription:
        return self._status.subscribe(callback)


__all__ = ["VisualizationAdapter", "neuron_position"]
