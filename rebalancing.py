"""Rebalancing: move excess pending work off a deliverer who went over capacity.

A deliverer can be offered several matches before accepting any of them (for
example while capacity checks ran concurrently, or after capacity was lowered).
After the deliverer accepts, the oldest pending responses within capacity are
kept and the newest excess ones are re-offered to other deliverers or
auto-rejected.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from capacity import capacity_info, system_capacity_stats
from config import Settings
from db import get_lock
from models import (
    PartyStatus,
    Response,
    ResponseStatus,
    ResponseType,
    Role,
    SendRequest,
)
from notifications import EventKind, Notifier
from redistribution import (
    assign_to_first_available,
    declined_deliverer_ids,
    find_alternative_deliverers,
)

logger = logging.getLogger(__name__)


@dataclass
class RebalanceOutcome:
    deliverer_id: int
    load_before: int
    max_capacity: int
    transferred: List[Tuple[int, int]] = field(default_factory=list)  # (old response, new response)
    auto_rejected: List[int] = field(default_factory=list)
    kept_over_capacity: List[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "deliverer_id": self.deliverer_id,
            "load_before": self.load_before,
            "max_capacity": self.max_capacity,
            "transferred": [list(pair) for pair in self.transferred],
            "auto_rejected": self.auto_rejected,
            "kept_over_capacity": self.kept_over_capacity,
        }


def auto_reject(session, response: Response, reason: str):
    response.set_party_status(Role.DELIVERER, PartyStatus.REJECTED)
    response.auto_rejected = True
    response.message = f"Auto-rejected: {reason}"
    session.add(response)
    logger.info("Response %s auto-rejected (deliverer %s, sender %s): %s",
                response.id, response.deliverer_id, response.sender_id, reason)


def _restore(session, response: Response):
    response.reset_statuses()
    response.auto_rejected = False
    session.add(response)


def _redistribute_excess(session, response: Response, busy_deliverer_id: int,
                         settings: Settings, outcome: RebalanceOutcome) -> List[tuple]:
    """Move one excess response; returns the notifications to send once all moves are done."""
    response_id = response.id
    sender_id = response.sender_id
    send_request_id = response.send_request_id

    with get_lock(f"send:{send_request_id}"):
        session.refresh(response)
        if response.overall_status != ResponseStatus.PENDING:
            logger.info("Response %s is %s, no longer moved", response_id, response.overall_status.value)
            return []
        send_request = session.get(SendRequest, send_request_id)
        if send_request is None:
            logger.warning("Cannot redistribute response %s: send request %s not found", response_id, send_request_id)
            auto_reject(session, response, "send request not found")
            session.commit()
            outcome.auto_rejected.append(response_id)
            return [(sender_id, EventKind.AUTO_REJECTED, {"response_id": response_id})]

        exclude = declined_deliverer_ids(session, send_request_id) | {busy_deliverer_id}
        alternatives = find_alternative_deliverers(session, send_request, exclude, settings)
        if not alternatives and not settings.auto_reject_when_no_alternatives:
            logger.warning("No alternative for response %s, kept over capacity on deliverer %s",
                           response_id, busy_deliverer_id)
            outcome.kept_over_capacity.append(response_id)
            return []

        # reject first so the sender request has no active response while it is re-offered
        auto_reject(session, response, "no alternative deliverers available")
        session.commit()
        new_response = None
        if alternatives:
            new_response = assign_to_first_available(session, send_request, alternatives, settings)
        old = session.get(Response, response_id)
        if new_response is None and not settings.auto_reject_when_no_alternatives:
            # every alternative filled up meanwhile; the send lock is still held
            _restore(session, old)
            session.commit()
            logger.warning("Alternatives for response %s filled up, kept over capacity on deliverer %s",
                           response_id, busy_deliverer_id)
            outcome.kept_over_capacity.append(response_id)
            return []
        if new_response is not None:
            new_response_id = new_response.id
            new_deliverer_id = new_response.deliverer_id
            old.message = f"Auto-rejected: redistributed to deliverer {new_deliverer_id}"
            session.add(old)
        session.commit()

    if new_response is None:
        outcome.auto_rejected.append(response_id)
        return [(sender_id, EventKind.AUTO_REJECTED, {
            "response_id": response_id,
            "send_request_id": send_request_id,
        })]

    outcome.transferred.append((response_id, new_response_id))
    logger.info("Response %s transferred from deliverer %s to %s as response %s",
                response_id, busy_deliverer_id, new_deliverer_id, new_response_id)
    return [
        (sender_id, EventKind.REASSIGNED, {
            "old_response_id": response_id,
            "response_id": new_response_id,
            "send_request_id": send_request_id,
        }),
        (new_deliverer_id, EventKind.NEW_MATCH, {
            "response_id": new_response_id,
            "send_request_id": send_request_id,
        }),
    ]


def rebalance_deliverer(session, deliverer_id: int, notifier: Notifier, settings: Settings) -> RebalanceOutcome:
    """Bring one deliverer back within capacity, newest excess pending response first.

    Every move is committed before anyone is notified, so a failing notifier
    leaves no excess response behind.
    """
    max_capacity = settings.max_deliverer_capacity
    info = capacity_info(session, deliverer_id, max_capacity)
    outcome = RebalanceOutcome(deliverer_id=deliverer_id, load_before=info.current_load, max_capacity=max_capacity)
    if not info.is_over_capacity:
        logger.debug("Deliverer %s within capacity (%d/%d)", deliverer_id, info.current_load, max_capacity)
        return outcome

    pending = (
        session.query(Response)
        .filter(Response.deliverer_id == deliverer_id)
        .filter(Response.overall_status == ResponseStatus.PENDING)
        .filter(Response.response_type == ResponseType.MATCHING)
        .order_by(Response.created_at, Response.id)
        .all()
    )
    excess = info.current_load - max_capacity
    to_move = list(reversed(pending))[:excess]
    logger.info(
        "Rebalancing deliverer %s: load %d > %d, %d pending, moving %s",
        deliverer_id, info.current_load, max_capacity, len(pending), [r.id for r in to_move],
    )
    notifications = []
    for response in to_move:
        notifications.extend(_redistribute_excess(session, response, deliverer_id, settings, outcome))

    logger.info("Rebalancing of deliverer %s completed: %s", deliverer_id, outcome.as_dict())
    for user_id, event, payload in notifications:
        notifier.notify(user_id, event, payload)
    return outcome


def rebalance_after_acceptance(session, accepted: Response, notifier: Notifier,
                               settings: Settings) -> Optional[RebalanceOutcome]:
    if not (settings.distribution_enabled and settings.rebalancing_enabled):
        return None
    if accepted.response_type != ResponseType.MATCHING or accepted.deliverer_status != PartyStatus.ACCEPTED:
        return None
    logger.info("Rebalancing after deliverer %s accepted response %s (overall %s)",
                accepted.deliverer_id, accepted.id, accepted.overall_status.value)
    return rebalance_deliverer(session, accepted.deliverer_id, notifier, settings)


def over_capacity_deliverers(session, max_capacity: int) -> List[int]:
    loads = system_capacity_stats(session, max_capacity)["loads"]
    return sorted(deliverer_id for deliverer_id, load in loads.items() if load > max_capacity)
