"""Metric definitions used across the application."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name="ticket_status_changes_total",
        metric_type="counter",
        description="Committed ticket status changes.",
        label_names=("role",),
    ),
    MetricDefinition(
        name="ticket_transition_denials_total",
        metric_type="counter",
        description="Status change requests rejected by the transition policy.",
        label_names=("role",),
    ),
    MetricDefinition(
        name="ticket_conflicts_total",
        metric_type="counter",
        description="Writes rejected by the optimistic concurrency check.",
    ),
    MetricDefinition(
        name="ticket_notification_failures_total",
        metric_type="counter",
        description="Post-commit notifications that failed to dispatch.",
        label_names=("channel",),
    ),
    MetricDefinition(
        name="ticket_operation_duration_seconds",
        metric_type="distribution",
        description="Duration of ticket lifecycle operations in seconds.",
        label_names=("operation",),
    ),
)
