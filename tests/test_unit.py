"""
Unit tests for the matching building blocks.
Covers:
- Candidate predicate: route, date overlap, size class, status, owner
- Derived overall status for every party-status combination
- Capacity gate ordering, dedup per deliverer and capacity info
- Round-robin index stores and selection strategies
- Response ledger idempotence and its Open -> HasResponses side effect
- Settings from the environment, notifier and chat collaborators
"""
from datetime import datetime, timedelta
from types import SimpleNamespace

import httpx
import pytest
from pydantic import ValidationError

from factories import FROM_DATE, TO_DATE, make_delivery, make_send, make_user, fetch
from db import get_session
from models import (
    Chat,
    ChatStatus,
    DeliveryRequest,
    OfferType,
    PartyStatus,
    RequestStatus,
    Response,
    ResponseStatus,
    Role,
    RoundRobinCursor,
    derive_overall_status,
)
from candidates import find_delivery_candidates, find_send_candidates
from capacity import LoadedCandidate, available_deliverers, capacity_info, one_to_one_violations
from config import DistributionStrategy, Settings, get_settings
from fairness import (
    DatabaseIndexStore,
    RedisIndexStore,
    get_index_store,
    select_deliverer,
    select_round_robin,
)
from ledger import create_or_update_response
from notifications import EventKind, LogNotifier, WebhookNotifier, get_notifier
from chats import ChatService


def offer(session, delivery, send):
    return create_or_update_response(
        session,
        deliverer_id=delivery.user_id,
        sender_id=send.user_id,
        offer_type=OfferType.SEND,
        receiving_request_id=delivery.id,
        offering_request_id=send.id,
    )


# ────────────────────────── candidate finder ────────────────────────────────

def test_candidates_same_route_overlapping_dates():
    d = make_user("D")
    s = make_user("S")
    delivery = make_delivery(d.id)
    send = make_send(s.id)
    with get_session() as session:
        assert [c.id for c in find_delivery_candidates(session, send)] == [delivery.id]
        assert [c.id for c in find_send_candidates(session, delivery)] == [send.id]


def test_candidates_require_exact_route():
    d = make_user("D")
    s = make_user("S")
    make_delivery(d.id, from_location_id=1, to_location_id=3)
    make_delivery(d.id, from_location_id=2, to_location_id=1)
    send = make_send(s.id, from_location_id=1, to_location_id=2)
    with get_session() as session:
        assert find_delivery_candidates(session, send) == []


def test_candidates_date_windows_touching_at_boundary_overlap():
    d = make_user("D")
    s = make_user("S")
    delivery = make_delivery(d.id, from_date=TO_DATE, to_date=TO_DATE + timedelta(days=3))
    send = make_send(s.id)
    with get_session() as session:
        assert [c.id for c in find_delivery_candidates(session, send)] == [delivery.id]


def test_candidates_disjoint_dates_excluded():
    d = make_user("D")
    s = make_user("S")
    make_delivery(d.id, from_date=TO_DATE + timedelta(days=1), to_date=TO_DATE + timedelta(days=5))
    make_delivery(d.id, from_date=FROM_DATE - timedelta(days=5), to_date=FROM_DATE - timedelta(days=1))
    send = make_send(s.id)
    with get_session() as session:
        assert find_delivery_candidates(session, send) == []


def test_candidates_size_filter():
    d = make_user("D")
    s = make_user("S")
    small = make_delivery(d.id, size_type="small")
    make_delivery(d.id, size_type="large")
    any_size = make_delivery(d.id, size_type=None)
    unspecified = make_delivery(d.id, size_type="unspecified")
    send = make_send(s.id, size_type="small")
    with get_session() as session:
        ids = [c.id for c in find_delivery_candidates(session, send)]
    assert ids == [small.id, any_size.id, unspecified.id]


def test_unspecified_send_matches_every_size():
    d = make_user("D")
    s = make_user("S")
    a = make_delivery(d.id, size_type="small")
    b = make_delivery(d.id, size_type="large")
    send = make_send(s.id, size_type="unspecified")
    with get_session() as session:
        assert [c.id for c in find_delivery_candidates(session, send)] == [a.id, b.id]


def test_candidates_exclude_own_and_closed_requests():
    d = make_user("D")
    s = make_user("S")
    make_delivery(s.id)  # same owner as the send request
    make_delivery(d.id, status=RequestStatus.MATCHED)
    make_delivery(d.id, status=RequestStatus.CLOSED)
    has_responses = make_delivery(d.id, status=RequestStatus.HAS_RESPONSES)
    send = make_send(s.id)
    with get_session() as session:
        assert [c.id for c in find_delivery_candidates(session, send)] == [has_responses.id]


# ────────────────────────── derived status ──────────────────────────────────

@pytest.mark.parametrize("deliverer,sender,expected", [
    (PartyStatus.PENDING, PartyStatus.PENDING, ResponseStatus.PENDING),
    (PartyStatus.ACCEPTED, PartyStatus.PENDING, ResponseStatus.PARTIAL),
    (PartyStatus.PENDING, PartyStatus.ACCEPTED, ResponseStatus.PARTIAL),
    (PartyStatus.ACCEPTED, PartyStatus.ACCEPTED, ResponseStatus.ACCEPTED),
    (PartyStatus.REJECTED, PartyStatus.PENDING, ResponseStatus.REJECTED),
    (PartyStatus.PENDING, PartyStatus.REJECTED, ResponseStatus.REJECTED),
    (PartyStatus.REJECTED, PartyStatus.ACCEPTED, ResponseStatus.REJECTED),
    (PartyStatus.ACCEPTED, PartyStatus.REJECTED, ResponseStatus.REJECTED),
    (PartyStatus.REJECTED, PartyStatus.REJECTED, ResponseStatus.REJECTED),
])
def test_derive_overall_status(deliverer, sender, expected):
    assert derive_overall_status(deliverer, sender) == expected


def test_response_roles_are_direct_field_reads():
    r = Response(deliverer_id=1, sender_id=2, delivery_request_id=10, send_request_id=20,
                 offer_type=OfferType.DELIVERY)
    assert r.role_of(1) == Role.DELIVERER
    assert r.role_of(2) == Role.SENDER
    assert r.role_of(3) is None
    assert r.receiving_request_id == 20
    assert r.offering_request_id == 10


# ────────────────────────── capacity gate ───────────────────────────────────

def test_available_deliverers_sorted_by_load_then_request_id():
    d1, d2, d3 = make_user("D1"), make_user("D2"), make_user("D3")
    s1, s2 = make_user("S1"), make_user("S2")
    r1 = make_delivery(d1.id)
    r2 = make_delivery(d2.id)
    r3 = make_delivery(d3.id)
    sends = [make_send(s1.id), make_send(s2.id), make_send(s1.id)]
    with get_session() as session:
        offer(session, r1, sends[0])
        offer(session, r1, sends[1])
        offer(session, r2, sends[2])
        session.commit()
        gated = available_deliverers(session, [r1, r2, r3], max_capacity=3)
    assert [(c.user_id, c.load) for c in gated] == [(d3.id, 0), (d2.id, 1), (d1.id, 2)]


def test_available_deliverers_excludes_full_and_dedupes_owner():
    d1, d2 = make_user("D1"), make_user("D2")
    s = make_user("S")
    full = make_delivery(d1.id)
    first = make_delivery(d2.id)
    second = make_delivery(d2.id)
    send = make_send(s.id)
    with get_session() as session:
        offer(session, full, send)
        session.commit()
        gated = available_deliverers(session, [second, full, first], max_capacity=1)
    assert len(gated) == 1
    assert gated[0].request.id == first.id


def test_capacity_info_counts_pending_and_partial():
    d = make_user("D")
    s = make_user("S")
    delivery = make_delivery(d.id)
    sends = [make_send(s.id) for _ in range(3)]
    with get_session() as session:
        r1 = offer(session, delivery, sends[0])
        offer(session, delivery, sends[1])
        rejected = offer(session, delivery, sends[2])
        r1.set_party_status(Role.DELIVERER, PartyStatus.ACCEPTED)
        rejected.set_party_status(Role.SENDER, PartyStatus.REJECTED)
        session.commit()
        info = capacity_info(session, d.id, max_capacity=3)
    assert info.current_load == 2
    assert info.pending_responses == 1
    assert info.partial_responses == 1
    assert info.available_capacity == 1
    assert not info.is_at_capacity
    assert info.as_dict()["available_capacity"] == 1


def test_one_to_one_violations_reports_send_requests():
    d1, d2 = make_user("D1"), make_user("D2")
    s = make_user("S")
    send = make_send(s.id)
    deliveries = [make_delivery(d1.id), make_delivery(d2.id)]
    with get_session() as session:
        offer(session, deliveries[0], send)
        offer(session, deliveries[1], send)
        session.commit()
        assert one_to_one_violations(session) == {send.id: 2}


# ────────────────────────── fairness ────────────────────────────────────────

class CountingStore:
    def __init__(self):
        self.value = 0

    def next_index(self, n):
        current = self.value
        self.value += 1
        return current % n


class FakeRedis:
    """Just the commands RedisIndexStore uses."""

    def __init__(self):
        self.data = {}
        self.ttl = {}

    def incr(self, key):
        self.data[key] = int(self.data.get(key, 0)) + 1
        return self.data[key]

    def expire(self, key, seconds):
        self.ttl[key] = seconds

    def get(self, key):
        value = self.data.get(key)
        return str(value) if value is not None else None

    def delete(self, key):
        self.data.pop(key, None)


def candidate(request_id, user_id, load=0):
    return LoadedCandidate(request=SimpleNamespace(id=request_id, user_id=user_id), load=load)


def test_database_index_store_rotates_and_resets():
    with get_session() as session:
        store = DatabaseIndexStore(session, ttl_seconds=60)
        assert [store.next_index(3) for _ in range(4)] == [0, 1, 2, 0]
        session.commit()
        assert store.peek() == 4
        assert store.state()["current_index"] == 4
        store.reset()
        session.commit()
        assert store.peek() == 0


def test_database_index_store_expired_cursor_starts_over():
    with get_session() as session:
        session.add(RoundRobinCursor(key="round_robin_deliverer_index", value=5,
                                     expires_at=datetime.utcnow() - timedelta(seconds=1)))
        session.commit()
        store = DatabaseIndexStore(session)
        assert store.peek() == 0
        assert store.next_index(3) == 0
        session.commit()
        assert store.peek() == 1


def test_redis_index_store_uses_incr():
    client = FakeRedis()
    store = RedisIndexStore(client, ttl_seconds=30)
    assert [store.next_index(2) for _ in range(3)] == [0, 1, 0]
    assert client.ttl["round_robin_deliverer_index"] == 30
    assert store.state() == {"current_index": 3, "cache_key": "round_robin_deliverer_index",
                             "cache_ttl": 30, "backend": "redis"}
    store.reset()
    assert store.peek() == 0


def test_get_index_store_prefers_redis_when_configured():
    with get_session() as session:
        assert isinstance(get_index_store(session, Settings()), DatabaseIndexStore)
        store = get_index_store(session, Settings(redis_url="redis://localhost:6379/0"))
        assert isinstance(store, RedisIndexStore)


def test_round_robin_uses_request_id_order_not_load_order():
    store = CountingStore()
    busy = candidate(1, 100, load=2)
    idle = candidate(2, 200, load=0)
    picks = [select_round_robin([idle, busy], store).user_id for _ in range(3)]
    assert picks == [100, 200, 100]


def test_select_deliverer_strategies():
    cands = [candidate(5, 50, load=0), candidate(3, 30, load=1)]
    assert select_deliverer(cands, DistributionStrategy.LEAST_LOADED, CountingStore()).user_id == 50
    assert select_deliverer(cands, DistributionStrategy.RANDOM, CountingStore()) in cands
    assert select_deliverer([], DistributionStrategy.ROUND_ROBIN, CountingStore()) is None


# ────────────────────────── ledger ──────────────────────────────────────────

def test_ledger_is_idempotent_and_refreshes():
    d = make_user("D")
    s = make_user("S")
    delivery = make_delivery(d.id)
    send = make_send(s.id)
    with get_session() as session:
        first = offer(session, delivery, send)
        first.set_party_status(Role.SENDER, PartyStatus.REJECTED)
        session.commit()
        second = offer(session, delivery, send)
        session.commit()
        assert second.id == first.id
        assert session.query(Response).count() == 1
        assert second.overall_status == ResponseStatus.PENDING
        assert second.sender_status == PartyStatus.PENDING


def test_ledger_marks_receiving_request_has_responses():
    d = make_user("D")
    s = make_user("S")
    delivery = make_delivery(d.id)
    send = make_send(s.id)
    with get_session() as session:
        offer(session, delivery, send)
        session.commit()
    assert fetch(DeliveryRequest, delivery.id).status == RequestStatus.HAS_RESPONSES
    assert fetch(type(send), send.id).status == RequestStatus.OPEN


def test_ledger_leaves_sealed_response_alone():
    d = make_user("D")
    s = make_user("S")
    delivery = make_delivery(d.id)
    send = make_send(s.id)
    with get_session() as session:
        response = offer(session, delivery, send)
        response.set_party_status(Role.DELIVERER, PartyStatus.ACCEPTED)
        response.set_party_status(Role.SENDER, PartyStatus.ACCEPTED)
        session.commit()
        again = offer(session, delivery, send)
        assert again.overall_status == ResponseStatus.ACCEPTED


# ────────────────────────── settings & collaborators ────────────────────────

def test_settings_read_from_environment(monkeypatch):
    assert get_settings().max_deliverer_capacity == 1
    monkeypatch.setenv("MAX_DELIVERER_CAPACITY", "3")
    monkeypatch.setenv("DISTRIBUTION_STRATEGY", "least_loaded")
    monkeypatch.setenv("DISTRIBUTION_ENABLED", "false")
    settings = get_settings()
    assert settings.max_deliverer_capacity == 3
    assert settings.distribution_strategy == DistributionStrategy.LEAST_LOADED
    assert settings.distribution_enabled is False


def test_settings_reject_invalid_capacity(monkeypatch):
    monkeypatch.setenv("MAX_DELIVERER_CAPACITY", "0")
    with pytest.raises(ValidationError):
        get_settings()


def test_get_notifier_defaults_to_log():
    assert isinstance(get_notifier(Settings()), LogNotifier)
    assert isinstance(get_notifier(Settings(notification_webhook_url="http://hooks.test/n")), WebhookNotifier)


def test_webhook_notifier_posts_event():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    WebhookNotifier("http://hooks.test/notify", client=client).notify(7, EventKind.NEW_MATCH, {"response_id": 1})
    assert len(seen) == 1
    assert seen[0].url == "http://hooks.test/notify"
    body = seen[0].read()
    assert b'"event":"new_match"' in body.replace(b" ", b"")


def test_webhook_notifier_raises_on_failure():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    with pytest.raises(httpx.HTTPStatusError):
        WebhookNotifier("http://hooks.test/notify", client=client).notify(7, EventKind.NEW_MATCH)


def test_chat_thread_is_reused_in_either_direction():
    a, b = make_user("A"), make_user("B")
    chats = ChatService()
    with get_session() as session:
        first = chats.create_or_reuse_thread(session, sender_id=a.id, deliverer_id=b.id)
        again = chats.create_or_reuse_thread(session, sender_id=b.id, deliverer_id=a.id)
        session.commit()
        assert first == again
        assert session.query(Chat).count() == 1


def test_chat_thread_is_reactivated():
    a, b = make_user("A"), make_user("B")
    with get_session() as session:
        chat = Chat(sender_id=a.id, receiver_id=b.id, status=ChatStatus.INACTIVE)
        session.add(chat)
        session.commit()
        existing_id = chat.id
        chat_id = ChatService().create_or_reuse_thread(session, sender_id=a.id, deliverer_id=b.id)
        session.commit()
    assert chat_id == existing_id
    assert fetch(Chat, chat_id).status == ChatStatus.ACTIVE
