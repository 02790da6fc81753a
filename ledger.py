"""Response ledger: the single write path for new matches."""
import logging
from datetime import datetime

from models import (
    DeliveryRequest,
    OfferType,
    RequestStatus,
    Response,
    ResponseStatus,
    ResponseType,
    SendRequest,
)

logger = logging.getLogger(__name__)


def mark_has_responses(session, model, request_id: int) -> bool:
    """Open -> HasResponses; no-op for a request already past Open."""
    updated = (
        session.query(model)
        .filter(model.id == request_id)
        .filter(model.status == RequestStatus.OPEN)
        .update({model.status: RequestStatus.HAS_RESPONSES}, synchronize_session="fetch")
    )
    if updated:
        logger.info("%s %s now has responses", model.__name__, request_id)
    return bool(updated)


def _find(session, key: dict):
    query = session.query(Response)
    for column, value in key.items():
        query = query.filter(getattr(Response, column) == value)
    return query.with_for_update().first()


def create_or_update_response(session, deliverer_id: int, sender_id: int, offer_type: OfferType,
                              receiving_request_id: int, offering_request_id: int,
                              response_type: ResponseType = ResponseType.MATCHING) -> Response:
    """Upsert the pairing keyed by (deliverer, sender, offer type, receiving, offering).

    New rows start Pending on both sides; an existing row is reset to Pending
    unless it is already sealed. The receiving request moves Open -> HasResponses.
    The caller commits.
    """
    offer_type = OfferType(offer_type)
    if offer_type == OfferType.SEND:
        delivery_request_id, send_request_id = receiving_request_id, offering_request_id
        receiving_model = DeliveryRequest
    else:
        delivery_request_id, send_request_id = offering_request_id, receiving_request_id
        receiving_model = SendRequest

    key = {
        "deliverer_id": deliverer_id,
        "sender_id": sender_id,
        "offer_type": offer_type,
        "delivery_request_id": delivery_request_id,
        "send_request_id": send_request_id,
    }

    response = _find(session, key)
    created = response is None
    if created:
        response = Response(response_type=response_type, **key)
        session.add(response)
        session.flush()
    else:
        if response.overall_status == ResponseStatus.ACCEPTED:
            logger.info("Response %s already sealed, not refreshed", response.id)
            return response
        response.reset_statuses()
        response.response_type = response_type
        response.created_at = datetime.utcnow()
        session.add(response)
        session.flush()

    mark_has_responses(session, receiving_model, receiving_request_id)

    logger.info(
        "Matching response %s %s: deliverer=%s sender=%s offer_type=%s delivery_request=%s send_request=%s",
        response.id, "created" if created else "refreshed", deliverer_id, sender_id,
        offer_type.value, delivery_request_id, send_request_id,
    )
    return response
