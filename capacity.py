"""Capacity gate: a deliverer's active load against the configured maximum."""
import logging
from dataclasses import dataclass, asdict
from typing import Dict, Iterable, List

from sqlalchemy import func

from models import (
    ACTIVE_STATUSES,
    DeliveryRequest,
    Response,
    ResponseStatus,
    ResponseType,
    User,
)

logger = logging.getLogger(__name__)


@dataclass
class CapacityInfo:
    deliverer_id: int
    max_capacity: int
    current_load: int
    pending_responses: int = 0
    partial_responses: int = 0

    @property
    def available_capacity(self) -> int:
        return max(0, self.max_capacity - self.current_load)

    @property
    def is_at_capacity(self) -> bool:
        return self.current_load >= self.max_capacity

    @property
    def is_over_capacity(self) -> bool:
        return self.current_load > self.max_capacity

    def as_dict(self) -> dict:
        data = asdict(self)
        data["available_capacity"] = self.available_capacity
        data["is_at_capacity"] = self.is_at_capacity
        return data


@dataclass
class LoadedCandidate:
    request: DeliveryRequest
    load: int

    @property
    def user_id(self) -> int:
        return self.request.user_id


def active_load(session, deliverer_id: int) -> int:
    return (
        session.query(func.count(Response.id))
        .filter(Response.deliverer_id == deliverer_id)
        .filter(Response.overall_status.in_(ACTIVE_STATUSES))
        .scalar()
    ) or 0


def active_loads(session, deliverer_ids: Iterable[int]) -> Dict[int, int]:
    ids = list(set(deliverer_ids))
    if not ids:
        return {}
    rows = (
        session.query(Response.deliverer_id, func.count(Response.id))
        .filter(Response.deliverer_id.in_(ids))
        .filter(Response.overall_status.in_(ACTIVE_STATUSES))
        .group_by(Response.deliverer_id)
        .all()
    )
    loads = {i: 0 for i in ids}
    loads.update({deliverer_id: count for deliverer_id, count in rows})
    return loads


def capacity_info(session, deliverer_id: int, max_capacity: int) -> CapacityInfo:
    rows = (
        session.query(Response.overall_status, func.count(Response.id))
        .filter(Response.deliverer_id == deliverer_id)
        .filter(Response.overall_status.in_(ACTIVE_STATUSES))
        .group_by(Response.overall_status)
        .all()
    )
    counts = {status: count for status, count in rows}
    pending = counts.get(ResponseStatus.PENDING, 0)
    partial = counts.get(ResponseStatus.PARTIAL, 0)
    return CapacityInfo(
        deliverer_id=deliverer_id,
        max_capacity=max_capacity,
        current_load=pending + partial,
        pending_responses=pending,
        partial_responses=partial,
    )


def available_deliverers(session, candidates: List[DeliveryRequest], max_capacity: int,
                         log_events: bool = True) -> List[LoadedCandidate]:
    """Candidates whose owner is under capacity, least loaded first.

    A deliverer with several compatible requests is represented once, by the
    request with the lowest id. Ties on load are broken by request id.
    """
    by_owner = {}
    for request in sorted(candidates, key=lambda r: r.id):
        by_owner.setdefault(request.user_id, request)
    loads = active_loads(session, by_owner.keys())
    available = [
        LoadedCandidate(request=request, load=loads[user_id])
        for user_id, request in by_owner.items()
        if loads[user_id] < max_capacity
    ]
    available.sort(key=lambda c: (c.load, c.request.id))
    logger.log(
        logging.INFO if log_events else logging.DEBUG,
        "Capacity gate: %d candidates, %d deliverers, %d under capacity %d (loads=%s)",
        len(candidates), len(by_owner), len(available), max_capacity, loads,
    )
    return available


def reserve_slot(session, deliverer_id: int, max_capacity: int) -> bool:
    """Lock the deliverer's row and recount; True if one more response fits.

    The caller must hold the in-process ``deliverer:<id>`` lock and write the
    new response in the same transaction.
    """
    session.get(User, deliverer_id, with_for_update=True)
    load = active_load(session, deliverer_id)
    if load >= max_capacity:
        logger.info("Deliverer %s at capacity (%d/%d), slot not reserved", deliverer_id, load, max_capacity)
        return False
    return True


def send_request_has_active_response(session, send_request_id: int) -> bool:
    return (
        session.query(Response.id)
        .filter(Response.send_request_id == send_request_id)
        .filter(Response.response_type == ResponseType.MATCHING)
        .filter(Response.overall_status.in_(ACTIVE_STATUSES))
        .first()
    ) is not None


def system_capacity_stats(session, max_capacity: int) -> dict:
    loads = dict(
        session.query(Response.deliverer_id, func.count(Response.id))
        .filter(Response.overall_status.in_(ACTIVE_STATUSES))
        .group_by(Response.deliverer_id)
        .all()
    )
    total_active = sum(loads.values())
    deliverers = len(loads)
    utilization = round(total_active / (deliverers * max_capacity) * 100, 2) if deliverers else 0
    return {
        "total_deliverers_with_responses": deliverers,
        "deliverers_at_capacity": sum(1 for load in loads.values() if load >= max_capacity),
        "deliverers_over_capacity": sum(1 for load in loads.values() if load > max_capacity),
        "total_active_responses": total_active,
        "capacity_utilization_rate": utilization,
        "loads": loads,
    }


def one_to_one_violations(session) -> Dict[int, int]:
    """Sender requests holding more than one active matching response."""
    rows = (
        session.query(Response.send_request_id, func.count(Response.id))
        .filter(Response.response_type == ResponseType.MATCHING)
        .filter(Response.overall_status.in_(ACTIVE_STATUSES))
        .group_by(Response.send_request_id)
        .having(func.count(Response.id) > 1)
        .all()
    )
    return {send_request_id: count for send_request_id, count in rows}
