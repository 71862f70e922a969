"""Experiment weight contribution."""

from trafficshift.experiments.experiment import (
    Experiment,
    ExperimentPhase,
    TemplateStatus,
    weight_destinations_from_experiment,
)

__all__ = [
    "Experiment",
    "ExperimentPhase",
    "TemplateStatus",
    "weight_destinations_from_experiment",
]
