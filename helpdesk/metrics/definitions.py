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
        name="tickets_created_total",
        metric_type="counter",
        description="Tickets filed by customers.",
        label_names=("priority",),
    ),
    MetricDefinition(
        name="ticket_status_changes_total",
        metric_type="counter",
        description="Ticket status transitions, including implicit reopens.",
        label_names=("to_status",),
    ),
    MetricDefinition(
        name="ticket_messages_total",
        metric_type="counter",
        description="Messages appended to tickets.",
        label_names=("author_kind",),
    ),
    MetricDefinition(
        name="handoff_decisions_total",
        metric_type="counter",
        description="Support-handoff outcomes for customer messages.",
        label_names=("outcome",),
    ),
    MetricDefinition(
        name="assistant_failures_total",
        metric_type="counter",
        description="Assistant calls that produced no reply.",
        label_names=("reason",),
    ),
    MetricDefinition(
        name="assistant_call_duration_seconds",
        metric_type="distribution",
        description="Wall-clock duration of assistant calls.",
    ),
    MetricDefinition(
        name="reaper_runs_total",
        metric_type="counter",
        description="Inactivity sweeps executed.",
    ),
    MetricDefinition(
        name="reaper_closed_tickets_total",
        metric_type="counter",
        description="Tickets force-closed by the inactivity sweep.",
    ),
    MetricDefinition(
        name="notification_failures_total",
        metric_type="counter",
        description="Ticket notification e-mails that could not be delivered.",
    ),
)
