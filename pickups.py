r"""
Pickup claim and lifecycle rules for collection requests.

State machine::

    pending --claim--> accepted --complete--> completed
       \                  |
        \--cancel--> cancelled <--cancel--/

completed and cancelled are terminal. Every state change is a single
conditional update on the request document, so concurrent callers are
serialised by MongoDB rather than by locks held here.
"""
import logging
from typing import List, Optional

import numpy as np

from database import RequestStore, utcnow
from schemas import CancelCommand, ClaimCommand, CompleteCommand, GeoPoint

logger = logging.getLogger("ewaste.pickups")

PENDING = "pending"
ACCEPTED = "accepted"
COMPLETED = "completed"
CANCELLED = "cancelled"
TERMINAL = (COMPLETED, CANCELLED)

MAX_PICKUP_DISTANCE_KM = 100.0
EARTH_RADIUS_KM = 6371.0088
CANCEL_ATTEMPTS = 3


class PickupError(Exception):
    """Base class for failures of the pickup protocol."""
    kind = "pickup_error"

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.request_id = request_id


class Conflict(PickupError):
    """The request is no longer claimable, usually because another agent won."""
    kind = "conflict"

    def __init__(self, message: str, request_id: Optional[str] = None, reason: str = "not_claimable"):
        super().__init__(message, request_id)
        self.reason = reason


class InvalidStateTransition(PickupError):
    kind = "invalid_state_transition"

    def __init__(self, message: str, request_id: Optional[str] = None, current: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message, request_id)
        self.current = current
        self.target = target


class Unauthorized(PickupError):
    kind = "unauthorized"


class NotFound(PickupError):
    kind = "not_found"


# ------------------ Claim ------------------
def claim(store: RequestStore, cmd: ClaimCommand) -> dict:
    """Bind ``cmd.agent_id`` to a pending, unassigned request.

    Exactly one of any number of concurrent callers succeeds. The others get
    Conflict; the record is re-read only to word the message.
    """
    updated = store.conditional_update(
        cmd.request_id,
        {"status": PENDING, "assigned_agent_id": None},
        {"status": ACCEPTED, "assigned_agent_id": cmd.agent_id, "accepted_at": utcnow()},
    )
    if updated is not None:
        logger.info(f"[claim] Agent {cmd.agent_id} accepted request {cmd.request_id}")
        return updated

    current = store.get(cmd.request_id)
    if current is None:
        reason, message = "not_found", "Request not found or could not be accepted."
    elif current.get("status") == ACCEPTED:
        reason = "already_accepted"
        message = "This pickup was just taken by another agent."
        if current.get("assigned_agent_id") == cmd.agent_id:
            message = "You have already accepted this pickup."
    else:
        reason = "not_claimable"
        message = f"Request could not be accepted. Current status: {current.get('status')}."
    logger.warning(f"[claim] Agent {cmd.agent_id} failed to accept request {cmd.request_id}: {reason}")
    raise Conflict(message, cmd.request_id, reason=reason)


# ------------------ Lifecycle ------------------
def complete(store: RequestStore, cmd: CompleteCommand) -> dict:
    """Mark an accepted request completed; only its assigned agent may do so."""
    updated = store.conditional_update(
        cmd.request_id,
        {"status": ACCEPTED, "assigned_agent_id": cmd.agent_id},
        {"status": COMPLETED, "completed_at": utcnow()},
    )
    if updated is not None:
        logger.info(f"[complete] Agent {cmd.agent_id} completed request {cmd.request_id}")
        return updated

    current = store.get(cmd.request_id)
    if current is None:
        raise NotFound("Collection request not found.", cmd.request_id)
    status = current.get("status")
    if status != ACCEPTED:
        raise InvalidStateTransition(
            f"Request cannot be completed in its current state ({status}).",
            cmd.request_id, current=status, target=COMPLETED,
        )
    if current.get("assigned_agent_id") != cmd.agent_id:
        logger.warning(f"[complete] Agent {cmd.agent_id} is not assigned to request {cmd.request_id}")
        raise Unauthorized("This pickup is not assigned to you.", cmd.request_id)
    # matched agent and status on re-read, so the update lost to a concurrent change
    raise Conflict("Request changed while completing; try again.", cmd.request_id)


def cancel(store: RequestStore, cmd: CancelCommand) -> dict:
    """Cancel a pending or accepted request on behalf of its requester or an admin.

    Compare-and-swap on the observed status and assignment, retried a few
    times if another writer gets in between the read and the update.
    """
    for _ in range(CANCEL_ATTEMPTS):
        current = store.get(cmd.request_id)
        if current is None:
            raise NotFound("Collection request not found.", cmd.request_id)
        if cmd.actor_role != "admin" and current.get("user_id") != cmd.actor_id:
            raise Unauthorized("Unauthorized to cancel this request.", cmd.request_id)
        status = current.get("status")
        if status not in (PENDING, ACCEPTED):
            raise InvalidStateTransition(
                f"Request cannot be cancelled in its current state ({status}).",
                cmd.request_id, current=status, target=CANCELLED,
            )
        holder = current.get("assigned_agent_id")
        updated = store.conditional_update(
            cmd.request_id,
            {"status": status, "assigned_agent_id": holder},
            {
                "status": CANCELLED,
                "assigned_agent_id": None,
                "released_agent_id": holder,
                "cancelled_at": utcnow(),
                "cancelled_by": cmd.actor_id,
            },
        )
        if updated is not None:
            logger.info(f"[cancel] {cmd.actor_role} {cmd.actor_id} cancelled request {cmd.request_id} (was {status})")
            return updated
        logger.info(f"[cancel] Request {cmd.request_id} changed during cancel, retrying")
    raise Conflict("Request kept changing while cancelling; try again.", cmd.request_id, reason="contended")


# ------------------ Candidate selection ------------------
def haversine_km(origin: GeoPoint, lats, lngs) -> np.ndarray:
    lat1, lng1 = np.radians(origin.lat), np.radians(origin.lng)
    lat2, lng2 = np.radians(np.asarray(lats, dtype=float)), np.radians(np.asarray(lngs, dtype=float))
    a = np.sin((lat2 - lat1) / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin((lng2 - lng1) / 2) ** 2
    return 2 * EARTH_RADIUS_KM * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def available_for_agent(store: RequestStore, agent_location: Optional[GeoPoint], max_distance_km: float = MAX_PICKUP_DISTANCE_KM, limit: Optional[int] = None) -> List[dict]:
    """Pending, unassigned requests an agent may try to claim.

    Nearest first within ``max_distance_km`` of the agent; newest first when
    the agent has no location. The list is advisory: claim re-checks.
    """
    filt = {"status": PENDING, "assigned_agent_id": None}
    if agent_location is None:
        return store.find(filt, sort=[("created_at", -1)], limit=limit)

    filt["location"] = {"$ne": None}
    docs = store.find(filt)
    if not docs:
        return []
    distances = haversine_km(
        agent_location,
        [d["location"]["lat"] for d in docs],
        [d["location"]["lng"] for d in docs],
    )
    order = np.argsort(distances, kind="stable")
    picked = []
    for i in order:
        if distances[i] > max_distance_km:
            break
        doc = docs[int(i)]
        doc["distance_km"] = round(float(distances[i]), 3)
        picked.append(doc)
        if limit and len(picked) >= limit:
            break
    return picked


def agent_pickups(store: RequestStore, agent_id: str, status: str) -> List[dict]:
    """An agent's own requests in one status; cancelled ones are matched on the released agent."""
    field = "released_agent_id" if status == CANCELLED else "assigned_agent_id"
    return store.find({field: agent_id, "status": status}, sort=[("updated_at", -1)])
