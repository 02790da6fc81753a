"""Redistribution: re-offer a sender's request after a deliverer declines it."""
import logging
from datetime import datetime, time
from typing import Iterable, List, Optional, Set

from sqlalchemy import func

from candidates import find_delivery_candidates
from capacity import (
    LoadedCandidate,
    available_deliverers,
    reserve_slot,
    send_request_has_active_response,
)
from config import Settings
from db import get_lock
from ledger import create_or_update_response
from models import (
    MATCHABLE_STATUSES,
    OfferType,
    Response,
    ResponseStatus,
    ResponseType,
    SendRequest,
)
from notifications import EventKind, Notifier

logger = logging.getLogger(__name__)


def declined_deliverer_ids(session, send_request_id: int) -> Set[int]:
    """Deliverers whose matching response for this sender request was rejected by a party."""
    rows = (
        session.query(Response.deliverer_id)
        .filter(Response.send_request_id == send_request_id)
        .filter(Response.response_type == ResponseType.MATCHING)
        .filter(Response.overall_status == ResponseStatus.REJECTED)
        .filter(Response.auto_rejected.is_(False))
        .all()
    )
    return {deliverer_id for (deliverer_id,) in rows}


def find_alternative_deliverers(session, send_request: SendRequest, exclude_user_ids: Iterable[int],
                                settings: Settings) -> List[LoadedCandidate]:
    """Compatible deliverers under capacity, minus the excluded ones, least loaded first."""
    excluded = set(exclude_user_ids)
    candidates = [
        request for request in find_delivery_candidates(session, send_request)
        if request.user_id not in excluded
    ]
    return available_deliverers(
        session, candidates, settings.max_deliverer_capacity, log_events=settings.log_capacity_events,
    )


def assign_to_first_available(session, send_request: SendRequest, candidates: List[LoadedCandidate],
                              settings: Settings, strict: Optional[bool] = None) -> Optional[Response]:
    """Offer the sender's request to the first candidate that still has a free slot.

    Holds ``send:<id>`` for the whole attempt so the request never gains a
    second active response, and ``deliverer:<id>`` around each reservation.
    Commits on success; returns None when every candidate is full or the
    request already has an active response.
    """
    if strict is None:
        strict = settings.strict_capacity
    with get_lock(f"send:{send_request.id}"):
        if send_request_has_active_response(session, send_request.id):
            logger.info("Send request %s already has an active response, not assigned", send_request.id)
            return None
        for candidate in candidates:
            with get_lock(f"deliverer:{candidate.user_id}"):
                if strict and not reserve_slot(session, candidate.user_id, settings.max_deliverer_capacity):
                    continue
                response = create_or_update_response(
                    session,
                    deliverer_id=candidate.user_id,
                    sender_id=send_request.user_id,
                    offer_type=OfferType.SEND,
                    receiving_request_id=candidate.request.id,
                    offering_request_id=send_request.id,
                )
                session.commit()
                return response
    logger.info("No candidate could take send request %s", send_request.id)
    return None


def redistribute_on_decline(session, declined: Response, notifier: Notifier,
                            settings: Settings) -> Optional[Response]:
    """Offer a declined sender request to the least-loaded remaining deliverer.

    Every deliverer that already declined this request is skipped, and once
    ``max_redistribution_attempts`` declines have accumulated the request is
    left without an active match until the next matching sweep.
    """
    if not (settings.distribution_enabled and settings.redistribution_enabled):
        logger.info("Redistribution disabled, response %s left for manual handling", declined.id)
        return None
    if declined.response_type != ResponseType.MATCHING:
        logger.info("Skipping redistribution for %s response %s", declined.response_type.value, declined.id)
        return None

    send_request = session.get(SendRequest, declined.send_request_id)
    if send_request is None:
        logger.warning("Send request %s not found for redistribution of response %s",
                       declined.send_request_id, declined.id)
        return None
    if send_request.status not in MATCHABLE_STATUSES:
        logger.info("Send request %s is %s, not redistributed", send_request.id, send_request.status.value)
        return None

    declined_by = declined_deliverer_ids(session, send_request.id) | {declined.deliverer_id}
    if len(declined_by) >= settings.max_redistribution_attempts:
        logger.warning(
            "Send request %s declined by %d deliverers, redistribution attempts exhausted",
            send_request.id, len(declined_by),
        )
        return None

    alternatives = find_alternative_deliverers(session, send_request, declined_by, settings)
    if not alternatives:
        logger.info("No alternative deliverers for send request %s (declined by %s)",
                    send_request.id, sorted(declined_by))
        return None

    response = assign_to_first_available(session, send_request, alternatives, settings)
    if response is None:
        return None

    logger.info(
        "Send request %s redistributed from deliverer %s to %s (response %s -> %s, %d alternatives)",
        send_request.id, declined.deliverer_id, response.deliverer_id, declined.id, response.id, len(alternatives),
    )
    notifier.notify(response.deliverer_id, EventKind.NEW_MATCH, {
        "response_id": response.id,
        "send_request_id": send_request.id,
    })
    return response


def redistribution_stats(session, day: Optional[datetime] = None) -> dict:
    start = datetime.combine((day or datetime.utcnow()).date(), time.min)
    base = (
        session.query(func.count(Response.id))
        .filter(Response.response_type == ResponseType.MATCHING)
        .filter(Response.created_at >= start)
    )
    total = base.scalar() or 0
    declined = base.filter(Response.overall_status == ResponseStatus.REJECTED).scalar() or 0
    return {
        "declined_responses_today": declined,
        "total_responses_today": total,
        "decline_rate": round(declined / total * 100, 2) if total else 0,
    }
