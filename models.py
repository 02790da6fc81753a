from typing import Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from datetime import date, datetime
from enum import Enum


UNSPECIFIED_SIZE = "unspecified"


class RequestStatus(str, Enum):
    OPEN = "open"
    HAS_RESPONSES = "has_responses"
    MATCHED = "matched"
    MATCHED_MANUALLY = "matched_manually"
    COMPLETED = "completed"
    CLOSED = "closed"


# statuses in which a request can still receive offers
MATCHABLE_STATUSES = (RequestStatus.OPEN, RequestStatus.HAS_RESPONSES)


class PartyStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ResponseStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CLOSED = "closed"


# responses counted against a deliverer's capacity
ACTIVE_STATUSES = (ResponseStatus.PENDING, ResponseStatus.PARTIAL)


class ResponseType(str, Enum):
    MATCHING = "matching"
    MANUAL = "manual"


class OfferType(str, Enum):
    """Which request was offered to the other side.

    SEND: the sender's request is offered to (received by) the deliverer's request.
    DELIVERY: the deliverer's request is offered to (received by) the sender's request.
    """
    SEND = "send"
    DELIVERY = "delivery"


class Role(str, Enum):
    DELIVERER = "deliverer"
    SENDER = "sender"


class ChatStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CLOSED = "closed"


def derive_overall_status(deliverer_status: PartyStatus, sender_status: PartyStatus) -> ResponseStatus:
    """Combined status of a pairing; a rejection from either side dominates."""
    if PartyStatus.REJECTED in (deliverer_status, sender_status):
        return ResponseStatus.REJECTED
    if deliverer_status == PartyStatus.ACCEPTED and sender_status == PartyStatus.ACCEPTED:
        return ResponseStatus.ACCEPTED
    if PartyStatus.ACCEPTED in (deliverer_status, sender_status):
        return ResponseStatus.PARTIAL
    return ResponseStatus.PENDING


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str


class DeliveryRequest(SQLModel, table=True):
    """Offer-side request: a deliverer announcing a route and travel window."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    from_location_id: int = Field(index=True)
    to_location_id: int = Field(index=True)
    from_date: date
    to_date: date
    size_type: Optional[str] = None  # None or "unspecified" matches any size
    description: Optional[str] = None
    status: RequestStatus = Field(default=RequestStatus.OPEN, index=True)
    matched_send_id: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class SendRequest(SQLModel, table=True):
    """Need-side request: a sender who wants a parcel carried."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    from_location_id: int = Field(index=True)
    to_location_id: int = Field(index=True)
    from_date: date
    to_date: date
    size_type: Optional[str] = None
    description: Optional[str] = None
    status: RequestStatus = Field(default=RequestStatus.OPEN, index=True)
    matched_delivery_id: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Chat(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    sender_id: int = Field(foreign_key="user.id", index=True)
    receiver_id: int = Field(foreign_key="user.id", index=True)
    send_request_id: Optional[int] = None
    delivery_request_id: Optional[int] = None
    status: ChatStatus = Field(default=ChatStatus.ACTIVE)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Response(SQLModel, table=True):
    """One candidate pairing between a deliverer's request and a sender's request.

    Both roles are stored explicitly, so resolving who is who never depends on
    the offer direction. ``overall_status`` is only ever written through
    :meth:`set_party_status`.
    """
    __table_args__ = (
        UniqueConstraint(
            "deliverer_id", "sender_id", "offer_type", "delivery_request_id", "send_request_id",
            name="uq_response_pairing",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    deliverer_id: int = Field(foreign_key="user.id", index=True)
    sender_id: int = Field(foreign_key="user.id", index=True)
    offer_type: OfferType = Field(default=OfferType.SEND)
    delivery_request_id: int = Field(foreign_key="deliveryrequest.id", index=True)
    send_request_id: int = Field(foreign_key="sendrequest.id", index=True)
    response_type: ResponseType = Field(default=ResponseType.MATCHING, index=True)
    deliverer_status: PartyStatus = Field(default=PartyStatus.PENDING)
    sender_status: PartyStatus = Field(default=PartyStatus.PENDING)
    overall_status: ResponseStatus = Field(default=ResponseStatus.PENDING, index=True)
    chat_id: Optional[int] = Field(default=None, foreign_key="chat.id")
    message: Optional[str] = None
    auto_rejected: bool = False  # rejected by rebalancing, not by a party
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def receiving_request_id(self) -> int:
        if self.offer_type == OfferType.SEND:
            return self.delivery_request_id
        return self.send_request_id

    @property
    def offering_request_id(self) -> int:
        if self.offer_type == OfferType.SEND:
            return self.send_request_id
        return self.delivery_request_id

    @property
    def is_active(self) -> bool:
        return self.overall_status in ACTIVE_STATUSES

    def role_of(self, user_id: int) -> Optional[Role]:
        if user_id == self.deliverer_id:
            return Role.DELIVERER
        if user_id == self.sender_id:
            return Role.SENDER
        return None

    def status_of(self, role: Role) -> PartyStatus:
        if role == Role.DELIVERER:
            return self.deliverer_status
        return self.sender_status

    def can_act(self, role: Role) -> bool:
        return self.is_active and self.status_of(role) == PartyStatus.PENDING

    def set_party_status(self, role: Role, status: PartyStatus) -> ResponseStatus:
        if role == Role.DELIVERER:
            self.deliverer_status = status
        else:
            self.sender_status = status
        self.overall_status = derive_overall_status(self.deliverer_status, self.sender_status)
        self.updated_at = datetime.utcnow()
        return self.overall_status

    def reset_statuses(self):
        self.set_party_status(Role.DELIVERER, PartyStatus.PENDING)
        self.set_party_status(Role.SENDER, PartyStatus.PENDING)
        self.message = None
        self.auto_rejected = False


class RoundRobinCursor(SQLModel, table=True):
    """Shared rotating index used by the round-robin selector."""
    key: str = Field(primary_key=True)
    value: int = 0
    expires_at: datetime = Field(default_factory=datetime.utcnow)
