"""
Dual-acceptance state machine for responses.

    Pending --one party accepts--> Partial --other party accepts--> Accepted
       |                              |
       +------any party rejects-------+-----------------------> Rejected

Accepted and Rejected are terminal. A full acceptance marks both requests as
matched and cross-references them; chat creation and notifications happen
after the transition is committed (see ``matching.Matcher``).
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from exceptions import ResponseNotActionableError
from models import (
    DeliveryRequest,
    OfferType,
    PartyStatus,
    RequestStatus,
    Response,
    ResponseStatus,
    ResponseType,
    Role,
    SendRequest,
)
from ledger import mark_has_responses

logger = logging.getLogger(__name__)


class Action(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


@dataclass
class ActionResult:
    """Outcome of a party action, including the follow-ups it calls for."""
    success: bool
    response_id: Optional[int] = None
    acting_user_id: Optional[int] = None
    action: Optional[Action] = None
    role: Optional[Role] = None
    deliverer_id: Optional[int] = None
    sender_id: Optional[int] = None
    overall_status: Optional[ResponseStatus] = None
    chat_id: Optional[int] = None
    rebalance_deliverer_id: Optional[int] = None
    redistribute: bool = False
    message: str = ""

    @property
    def fully_accepted(self) -> bool:
        return self.overall_status == ResponseStatus.ACCEPTED

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "response_id": self.response_id,
            "role": self.role.value if self.role else None,
            "overall_status": self.overall_status.value if self.overall_status else None,
            "chat_id": self.chat_id,
            "message": self.message,
        }


def _mark_offering_request_responded(session, response: Response, role: Role):
    # the receiving party's acceptance is a response to the offering request
    if response.offer_type == OfferType.SEND and role == Role.DELIVERER:
        mark_has_responses(session, SendRequest, response.send_request_id)
    elif response.offer_type == OfferType.DELIVERY and role == Role.SENDER:
        mark_has_responses(session, DeliveryRequest, response.delivery_request_id)


def _seal(session, response: Response):
    send_request = session.get(SendRequest, response.send_request_id)
    delivery_request = session.get(DeliveryRequest, response.delivery_request_id)
    if send_request is not None:
        send_request.status = RequestStatus.MATCHED
        send_request.matched_delivery_id = response.delivery_request_id
        session.add(send_request)
    if delivery_request is not None:
        delivery_request.status = RequestStatus.MATCHED
        delivery_request.matched_send_id = response.send_request_id
        session.add(delivery_request)
    logger.info(
        "Response %s fully accepted: send request %s and delivery request %s matched",
        response.id, response.send_request_id, response.delivery_request_id,
    )


def apply_party_action(session, response: Response, acting_user_id: int, action: Action) -> ActionResult:
    """Apply accept/reject from one party and derive the combined status.

    Returns ``ActionResult(success=False)`` without touching the response when
    the user is neither its deliverer nor its sender. Raises
    ResponseNotActionableError when the response is no longer active or this
    party has already decided. The caller commits.
    """
    action = Action(action)
    role = response.role_of(acting_user_id)
    if role is None:
        logger.warning("User %s is not a party to response %s", acting_user_id, response.id)
        return ActionResult(
            success=False, response_id=response.id, acting_user_id=acting_user_id,
            action=action, message="user is not a party to this response",
        )
    if not response.can_act(role):
        raise ResponseNotActionableError(
            f"response {response.id} cannot be {action.value}ed by the {role.value} "
            f"(overall={response.overall_status.value}, {role.value}={response.status_of(role).value})"
        )

    previous = response.overall_status
    status = PartyStatus.ACCEPTED if action == Action.ACCEPT else PartyStatus.REJECTED
    overall = response.set_party_status(role, status)
    session.add(response)

    if action == Action.ACCEPT:
        _mark_offering_request_responded(session, response, role)
    if overall == ResponseStatus.ACCEPTED:
        _seal(session, response)
    session.flush()

    logger.info(
        "Response %s: %s %sed, overall %s -> %s",
        response.id, role.value, action.value, previous.value, overall.value,
    )

    matching = response.response_type == ResponseType.MATCHING
    return ActionResult(
        success=True,
        response_id=response.id,
        acting_user_id=acting_user_id,
        action=action,
        role=role,
        deliverer_id=response.deliverer_id,
        sender_id=response.sender_id,
        overall_status=overall,
        chat_id=response.chat_id,
        rebalance_deliverer_id=(
            response.deliverer_id if matching and action == Action.ACCEPT and role == Role.DELIVERER else None
        ),
        redistribute=matching and action == Action.REJECT,
        message=f"response {overall.value}",
    )
