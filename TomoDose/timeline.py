"""
Delivery event timeline.

Merges the instantaneous (unsynchronized) and rate-based (synchronized)
delivery actions of a plan with the sync / projection width / end of
procedure markers into one tau-ordered sequence.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Tuple, Union

from .errors import MissingTotalTauError
from .plan import RawActions

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    GANTRY_ANGLE = "gantryAngle"
    JAW_FRONT = "jawFront"
    JAW_BACK = "jawBack"
    ISO_X = "isoX"
    ISO_Y = "isoY"
    ISO_Z = "isoZ"
    GANTRY_RATE = "gantryRate"
    JAW_FRONT_RATE = "jawFrontRate"
    JAW_BACK_RATE = "jawBackRate"
    ISO_Z_RATE = "isoZRate"
    SYNC = "sync"
    PROJ_WIDTH = "projWidth"
    EOP = "eop"


class _Unset:
    """Marker-only event payload."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET = _Unset()


@dataclass(frozen=True)
class TimelineEvent:
    tau: float
    kind: EventKind
    value: Union[float, _Unset] = UNSET

    @property
    def has_value(self) -> bool:
        return self.value is not UNSET


class EventTimeline:
    """Immutable, tau-ordered sequence of delivery events."""

    def __init__(self, events):
        self._events: Tuple[TimelineEvent, ...] = tuple(events)

    def __iter__(self) -> Iterator[TimelineEvent]:
        return iter(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def __getitem__(self, index):
        return self._events[index]

    @property
    def events(self) -> Tuple[TimelineEvent, ...]:
        return self._events

    @property
    def taus(self) -> List[float]:
        return [e.tau for e in self._events]

    def __repr__(self):
        return f"EventTimeline(n_events={len(self._events)})"


def build_timeline(actions: RawActions, total_tau) -> EventTimeline:
    """
    Build the event timeline of a plan.

    Parameters
    ----------
    actions : RawActions
        Delivery actions extracted from the archived plan
    total_tau : float
        Plan length in tau; the end of procedure marker is placed here

    Returns
    -------
    EventTimeline
        Events sorted by tau; equal taus keep insertion order.

    Raises
    ------
    MissingTotalTauError
        If total_tau is not known.
    """
    if total_tau is None:
        raise MissingTotalTauError("Total tau must be known before the event timeline is built")
    total_tau = float(total_tau)

    events: List[TimelineEvent] = []

    unsynchronized = (
        (EventKind.GANTRY_ANGLE, actions.gantry_angle),
        (EventKind.JAW_FRONT, actions.jaw_front),
        (EventKind.JAW_BACK, actions.jaw_back),
        (EventKind.ISO_X, actions.iso_x),
        (EventKind.ISO_Y, actions.iso_y),
        (EventKind.ISO_Z, actions.iso_z),
    )
    for kind, value in unsynchronized:
        if value is not None:
            events.append(TimelineEvent(0.0, kind, float(value)))

    for tau, velocity in actions.gantry_velocities:
        events.append(TimelineEvent(float(tau), EventKind.GANTRY_RATE, float(velocity)))

    for tau, front, back in actions.jaw_velocities:
        events.append(TimelineEvent(float(tau), EventKind.JAW_FRONT_RATE, float(front)))
        events.append(TimelineEvent(float(tau), EventKind.JAW_BACK_RATE, float(back)))

    for tau, z_velocity in actions.isocenter_velocities:
        events.append(TimelineEvent(float(tau), EventKind.ISO_Z_RATE, float(z_velocity)))

    events.append(TimelineEvent(0.0, EventKind.SYNC, UNSET))
    events.append(TimelineEvent(0.0, EventKind.PROJ_WIDTH, 1.0))
    events.append(TimelineEvent(total_tau, EventKind.EOP, UNSET))

    # sorted() is stable: jaw rate pairs stay adjacent and in front/back order
    events = sorted(events, key=lambda e: e.tau)

    logger.debug("Built event timeline with %d events (total tau %g)", len(events), total_tau)
    return EventTimeline(events)
