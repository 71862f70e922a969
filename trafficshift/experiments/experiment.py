"""
Experiments - weight contribution of a rollout's running experiment.

The experiment controller itself lives elsewhere; here we only read its
status to find out which template services should receive traffic.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence
from enum import Enum

from trafficshift.canary.rollout import ExperimentTemplate
from trafficshift.canary.weights import WeightDestination


class ExperimentPhase(Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"
    ERROR = "Error"
    INCONCLUSIVE = "Inconclusive"


@dataclass(frozen=True)
class TemplateStatus:
    """Status of one experiment template (its service and pod hash)."""
    name: str
    service_name: str = ""
    pod_template_hash: str = ""


@dataclass(frozen=True)
class Experiment:
    """Experiment owned by a rollout step."""
    name: str
    phase: ExperimentPhase = ExperimentPhase.PENDING
    template_statuses: tuple[TemplateStatus, ...] = field(default_factory=tuple)

    @property
    def is_running(self) -> bool:
        return self.phase == ExperimentPhase.RUNNING

    def template_status(self, name: str) -> Optional[TemplateStatus]:
        for status in self.template_statuses:
            if status.name == name:
                return status
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "phase": self.phase.value,
            "templateStatuses": [
                {
                    "name": s.name,
                    "serviceName": s.service_name,
                    "podTemplateHash": s.pod_template_hash,
                }
                for s in self.template_statuses
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Experiment":
        status = data.get("status", data)
        return cls(
            name=data.get("metadata", {}).get("name") or data.get("name", ""),
            phase=ExperimentPhase(status.get("phase") or "Pending"),
            template_statuses=tuple(
                TemplateStatus(
                    name=s["name"],
                    service_name=s.get("serviceName", ""),
                    pod_template_hash=s.get("podTemplateHash", ""),
                )
                for s in status.get("templateStatuses") or []
            ),
        )


def weight_destinations_from_experiment(
    experiment: Optional[Experiment],
    templates: Sequence[ExperimentTemplate],
) -> list[WeightDestination]:
    """
    One destination per template that declares a weight.

    Only a running experiment contributes; pending or finished experiments
    (and templates whose status has no service yet) contribute nothing.
    """
    if experiment is None or not experiment.is_running:
        return []

    destinations = []
    for template in templates:
        if template.weight is None:
            continue
        status = experiment.template_status(template.name)
        if status is None:
            continue
        destinations.append(WeightDestination(
            service_name=status.service_name,
            pod_template_hash=status.pod_template_hash,
            weight=template.weight,
        ))
    return destinations
