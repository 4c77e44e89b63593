"""
FleetPulse Geofence Evaluation

Point-in-polygon containment and the edge-triggered entry/exit state
machine used to raise geofence violations.

Containment:
    Each geofence is built once into a prepared shapely Polygon with
    longitude as x and latitude as y. A point on the boundary counts as
    inside (Polygon.covers). Antimeridian-crossing zones are not supported.

State Machine (one per tracked vehicle):

        Outside --(point inside G)--> Inside(G)      emits violation for G
        Inside(G) --(still in G)----> Inside(G)      nothing
        Inside(G) --(left G, in H)--> Inside(H)      emits violation for H
        Inside(G) --(in nothing)----> Outside        clears G, re-entry re-triggers

    Only the most recent geofence is remembered. When a point lies in
    several geofences, the first one registered wins.

The evaluator itself holds no per-vehicle state: callers pass the current
state in and store the returned state (see fleetpulse.backend.geofence_state).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Union
import logging

from shapely.geometry import Point, Polygon
from shapely.prepared import PreparedGeometry, prep

from ..models import GeoPoint, Geofence


logger = logging.getLogger(__name__)


# =============================================================================
# CONTAINMENT STATE
# =============================================================================

@dataclass(frozen=True)
class Outside:
    """The vehicle is not inside any remembered geofence."""

    @property
    def geofence_id(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class Inside:
    """The vehicle entered ``geofence_id`` and has not left it yet."""
    geofence_id: str


ContainmentState = Union[Outside, Inside]

OUTSIDE = Outside()


@dataclass
class GeofenceCheck:
    """
    Result of evaluating one position.

    Attributes:
        state: Containment state after this position
        matches: Every geofence containing the position
        entered: Geofence newly entered (a violation must be raised)
        exited_id: Id of the remembered geofence that was left
    """
    state: ContainmentState
    matches: List[Geofence] = field(default_factory=list)
    entered: Optional[Geofence] = None
    exited_id: Optional[str] = None

    @property
    def is_violation(self) -> bool:
        return self.entered is not None


# =============================================================================
# GEOMETRY
# =============================================================================

def to_polygon(vertices: Sequence[GeoPoint]) -> Optional[Polygon]:
    """
    Build a shapely polygon from a geofence vertex list.

    Returns:
        The polygon (x = lng, y = lat), or None when fewer than three
        vertices are given or the ring has no area
    """
    if len(vertices) < 3:
        return None
    polygon = Polygon([(p.lng, p.lat) for p in vertices])
    if polygon.is_empty or polygon.area == 0:
        return None
    return polygon


def point_in_polygon(lat: float, lng: float, polygon: Sequence[GeoPoint]) -> bool:
    """
    Containment test for a single point.

    Args:
        lat: Point latitude
        lng: Point longitude
        polygon: Vertices in order; the closing edge is implicit

    Returns:
        True if the point is inside the polygon or on its boundary
    """
    shape = to_polygon(polygon)
    return shape is not None and shape.covers(Point(lng, lat))


# =============================================================================
# EVALUATOR
# =============================================================================

class GeofenceEvaluator:
    """
    Holds the active geofences and computes state transitions.

    Example:
        evaluator = GeofenceEvaluator([quarry_zone])
        check = evaluator.evaluate(OUTSIDE, -24.1265, -66.1225)
        if check.is_violation:
            ...  # seal and append a GEOFENCE_VIOLATION event
        state = check.state
    """

    def __init__(self, geofences: Optional[Iterable[Geofence]] = None):
        self._geofences: Dict[str, Geofence] = {}
        self._shapes: Dict[str, PreparedGeometry] = {}
        for geofence in geofences or []:
            self.add_geofence(geofence)

    @property
    def geofences(self) -> List[Geofence]:
        return list(self._geofences.values())

    def get(self, geofence_id: str) -> Optional[Geofence]:
        return self._geofences.get(geofence_id)

    def add_geofence(self, geofence: Geofence) -> None:
        """
        Register a geofence.

        Raises:
            ValueError: If a geofence with the same id is already registered,
                or its polygon has no area
        """
        if geofence.id in self._geofences:
            raise ValueError(f"Geofence {geofence.id} already registered")
        shape = to_polygon(geofence.polygon)
        if shape is None:
            raise ValueError(f"Geofence {geofence.id} polygon has no area")
        self._geofences[geofence.id] = geofence
        self._shapes[geofence.id] = prep(shape)
        logger.info(
            f"Geofence added: {geofence.id} '{geofence.name}' "
            f"({geofence.risk_level.value}, {len(geofence.polygon)} vertices)"
        )

    def containing(self, lat: float, lng: float) -> List[Geofence]:
        """All geofences containing the point, in registration order."""
        point = Point(lng, lat)
        return [
            g for g in self._geofences.values()
            if self._shapes[g.id].covers(point)
        ]

    def evaluate(
        self, state: ContainmentState, lat: float, lng: float
    ) -> GeofenceCheck:
        """
        Compute the transition for one position.

        Args:
            state: The vehicle's current containment state
            lat: Position latitude
            lng: Position longitude

        Returns:
            GeofenceCheck with the next state and any entry/exit
        """
        matches = self.containing(lat, lng)
        matched_ids = [g.id for g in matches]

        if isinstance(state, Inside) and state.geofence_id in matched_ids:
            return GeofenceCheck(state=state, matches=matches)

        exited_id = state.geofence_id if isinstance(state, Inside) else None

        if not matches:
            return GeofenceCheck(state=OUTSIDE, matches=matches, exited_id=exited_id)

        entered = matches[0]
        return GeofenceCheck(
            state=Inside(entered.id),
            matches=matches,
            entered=entered,
            exited_id=exited_id,
        )
