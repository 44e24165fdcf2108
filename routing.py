"""
Route advisory for collection agents.

Asks the trip optimisation service for a visiting order over an agent's
accepted pickups. Read-only with respect to collection requests: any failure
here is reported to the caller and nothing is written back.
"""
import logging
import os
from typing import List, Optional

from database import RequestStore
from mapbox import MapboxClient, MapboxError, as_lng_lat
from pickups import ACCEPTED, PickupError
from schemas import GeoPoint, RoutePlan

logger = logging.getLogger("ewaste.routing")

MIN_WAYPOINTS = 2
MAX_WAYPOINTS = 12
ROUTE_PROFILE = os.getenv("ROUTE_PROFILE", "mapbox/driving")


class RouteInputOutOfRange(PickupError):
    kind = "route_input_out_of_range"

    def __init__(self, count: int):
        super().__init__(
            f"Invalid number of locations ({count}). Must be between "
            f"{MIN_WAYPOINTS} and {MAX_WAYPOINTS} for route optimization."
        )
        self.count = count


class RouteAdvisoryUnavailable(PickupError):
    kind = "route_advisory_unavailable"


def collapse_waypoints(points: List[GeoPoint]) -> List[GeoPoint]:
    """Drop points equal to the one right before them."""
    out: List[GeoPoint] = []
    for p in points:
        if out and out[-1].lat == p.lat and out[-1].lng == p.lng:
            continue
        out.append(p)
    return out


class RouteAdvisor:
    def __init__(self, store: RequestStore, client: Optional[MapboxClient] = None, profile: str = ROUTE_PROFILE):
        self.store = store
        self.client = client or MapboxClient()
        self.profile = profile

    def accepted_stops(self, agent_id: str) -> List[dict]:
        return self.store.find(
            {"assigned_agent_id": agent_id, "status": ACCEPTED, "location": {"$ne": None}},
            sort=[("preferred_datetime", 1)],
        )

    def optimize(self, agent_id: str, agent_location: GeoPoint) -> RoutePlan:
        stops = self.accepted_stops(agent_id)
        if not stops:
            logger.info(f"No accepted pickups found for agent {agent_id}")
            return RoutePlan(optimized=False, message="No accepted pickups found to optimize route for.")

        raw = [agent_location] + [GeoPoint(**s["location"]) for s in stops] + [agent_location]
        waypoints = collapse_waypoints(raw)
        if not MIN_WAYPOINTS <= len(waypoints) <= MAX_WAYPOINTS:
            logger.warning(f"Agent {agent_id} has {len(waypoints)} waypoints after collapsing duplicates")
            raise RouteInputOutOfRange(len(waypoints))

        logger.info(f"Requesting optimized trip for agent {agent_id} over {len(waypoints)} waypoints")
        try:
            data = self.client.optimized_trip(as_lng_lat(waypoints), profile=self.profile)
        except MapboxError as e:
            logger.error(f"Route optimization failed for agent {agent_id}: {e.message}")
            raise RouteAdvisoryUnavailable(f"Failed to calculate optimized route: {e.message}") from e

        return RoutePlan(
            optimized=True,
            message="Optimized route calculated successfully.",
            waypoints=waypoints,
            request_ids=[str(s["_id"]) for s in stops],
            route_data=data,
        )
