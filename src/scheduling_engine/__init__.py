"""Unified event scheduling and conflict resolution engine."""

from scheduling_engine.aggregator import EventAggregator, EventSet, aggregate
from scheduling_engine.detector import ConflictDetector, collision_groups
from scheduling_engine.engine import SchedulingEngine
from scheduling_engine.models import (
    ConflictDetail,
    ConflictResult,
    Event,
    Resolution,
    ResolutionKind,
    Severity,
    SourceOrigin,
    TimeWindow,
)
from scheduling_engine.negotiation import Negotiation, NegotiationState
from scheduling_engine.normalizer import normalize, normalize_records

__all__ = [
    "ConflictDetail",
    "ConflictDetector",
    "ConflictResult",
    "Event",
    "EventAggregator",
    "EventSet",
    "Negotiation",
    "NegotiationState",
    "Resolution",
    "ResolutionKind",
    "SchedulingEngine",
    "Severity",
    "SourceOrigin",
    "TimeWindow",
    "aggregate",
    "collision_groups",
    "normalize",
    "normalize_records",
]
