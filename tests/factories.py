"""Row builders shared by the test modules."""
from datetime import date

from capacity import active_load
from db import get_session
from models import DeliveryRequest, Response, ResponseType, SendRequest, User, ACTIVE_STATUSES

FROM_DATE = date(2026, 11, 1)
TO_DATE = date(2026, 11, 10)


def make_user(name="user"):
    with get_session() as session:
        u = User(name=name)
        session.add(u)
        session.commit()
        session.refresh(u)
        return u


def _make_request(model, user_id, from_location_id=1, to_location_id=2, from_date=FROM_DATE, to_date=TO_DATE,
                  size_type=None, **extra):
    with get_session() as session:
        r = model(
            user_id=user_id,
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            from_date=from_date,
            to_date=to_date,
            size_type=size_type,
            **extra,
        )
        session.add(r)
        session.commit()
        session.refresh(r)
        return r


def make_delivery(user_id, **kwargs) -> DeliveryRequest:
    return _make_request(DeliveryRequest, user_id, **kwargs)


def make_send(user_id, **kwargs) -> SendRequest:
    return _make_request(SendRequest, user_id, **kwargs)


def make_deliverers(n, prefix="D"):
    """n users, each with one open delivery request on the default route."""
    users = [make_user(f"{prefix}{i}") for i in range(1, n + 1)]
    requests = [make_delivery(u.id) for u in users]
    return users, requests


def make_senders(n, prefix="S"):
    users = [make_user(f"{prefix}{i}") for i in range(1, n + 1)]
    requests = [make_send(u.id) for u in users]
    return users, requests


def load(deliverer_id):
    with get_session() as session:
        return active_load(session, deliverer_id)


def fetch(model, pk):
    with get_session() as session:
        return session.get(model, pk)


def responses_for_send(send_request_id):
    with get_session() as session:
        return (
            session.query(Response)
            .filter(Response.send_request_id == send_request_id)
            .order_by(Response.id)
            .all()
        )


def active_responses():
    with get_session() as session:
        return (
            session.query(Response)
            .filter(Response.overall_status.in_(ACTIVE_STATUSES))
            .filter(Response.response_type == ResponseType.MATCHING)
            .order_by(Response.id)
            .all()
        )


def all_responses():
    with get_session() as session:
        return session.query(Response).order_by(Response.id).all()
