"""Candidate finder: structurally compatible requests from the opposite side.

Compatibility is an exact route match, overlapping date windows, a compatible
size class (equal, or either side unspecified), an open status on the
candidate, and a different owner. Queries have no side effects and return an
empty list when nothing qualifies.
"""
from typing import List, Optional

from sqlalchemy import or_

from models import (
    DeliveryRequest,
    SendRequest,
    MATCHABLE_STATUSES,
    UNSPECIFIED_SIZE,
)


def _is_unspecified(size_type: Optional[str]) -> bool:
    return size_type is None or size_type == UNSPECIFIED_SIZE


def _size_clause(model, size_type: Optional[str]):
    if _is_unspecified(size_type):
        return None
    return or_(
        model.size_type == size_type,
        model.size_type.is_(None),
        model.size_type == UNSPECIFIED_SIZE,
    )


def _compatible_query(session, model, request):
    query = (
        session.query(model)
        .filter(model.from_location_id == request.from_location_id)
        .filter(model.to_location_id == request.to_location_id)
        # windows overlap: candidate.from <= self.to and candidate.to >= self.from
        .filter(model.from_date <= request.to_date)
        .filter(model.to_date >= request.from_date)
        .filter(model.status.in_(MATCHABLE_STATUSES))
        .filter(model.user_id != request.user_id)
    )
    size = _size_clause(model, request.size_type)
    if size is not None:
        query = query.filter(size)
    return query.order_by(model.id)


def find_delivery_candidates(session, send_request: SendRequest) -> List[DeliveryRequest]:
    """Deliverer requests a sender's request could be offered to."""
    return _compatible_query(session, DeliveryRequest, send_request).all()


def find_send_candidates(session, delivery_request: DeliveryRequest) -> List[SendRequest]:
    """Sender requests that could be offered to a deliverer's request."""
    return _compatible_query(session, SendRequest, delivery_request).all()
