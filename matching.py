from typing import List, Optional
from models import (
    DeliveryRequest,
    MATCHABLE_STATUSES,
    OfferType,
    Response,
    ResponseStatus,
    Role,
    SendRequest,
)
from db import get_session, get_lock
from config import Settings, get_settings
from candidates import find_delivery_candidates, find_send_candidates
from capacity import (
    LoadedCandidate,
    active_load,
    available_deliverers,
    capacity_info,
    reserve_slot,
    send_request_has_active_response,
    system_capacity_stats,
)
from fairness import get_index_store, select_deliverer
from ledger import create_or_update_response
from acceptance import Action, ActionResult, apply_party_action
from rebalancing import over_capacity_deliverers, rebalance_after_acceptance, rebalance_deliverer
from redistribution import (
    assign_to_first_available,
    declined_deliverer_ids,
    redistribute_on_decline,
    redistribution_stats,
)
from notifications import EventKind, Notifier, get_notifier
from chats import ChatService
from exceptions import RequestNotFoundError, ResponseNotFoundError
import logging

logger = logging.getLogger(__name__)


class Matcher:
    """Entry points used by the request-creation and callback layers.

    Every call reads settings afresh and works in its own session. State
    transitions are committed before chats are created or anyone is notified.
    """

    def __init__(self, notifier: Optional[Notifier] = None, chats: Optional[ChatService] = None):
        self._notifier = notifier
        self.chats = chats or ChatService()

    def notifier(self, settings: Settings) -> Notifier:
        return self._notifier or get_notifier(settings)

    # ---------------------------------------------------------------- matching

    def match_send_request(self, send_request_id: int) -> Optional[int]:
        """Offer a new sender request to one deliverer; returns the response id."""
        settings = get_settings()
        with get_session() as session:
            send_request = session.get(SendRequest, send_request_id)
            if send_request is None:
                raise RequestNotFoundError(f"send request {send_request_id} not found")
            if send_request.status not in MATCHABLE_STATUSES:
                logger.info("Send request %s is %s, not matched", send_request_id, send_request.status.value)
                return None
            if send_request_has_active_response(session, send_request_id):
                logger.info("Send request %s already has an active response, skipping matching", send_request_id)
                return None

            excluded = declined_deliverer_ids(session, send_request_id)
            candidates = [c for c in find_delivery_candidates(session, send_request) if c.user_id not in excluded]

            if not settings.distribution_enabled:
                # first match wins, no capacity limits
                logger.info("Distribution disabled, using first match for send request %s", send_request_id)
                ordered = [LoadedCandidate(request=c, load=0) for c in candidates[:1]]
                response = assign_to_first_available(session, send_request, ordered, settings, strict=False)
            else:
                available = available_deliverers(
                    session, candidates, settings.max_deliverer_capacity, log_events=settings.log_capacity_events,
                )
                if not available:
                    logger.info("No available deliverers with capacity for send request %s (%d matches found)",
                                send_request_id, len(candidates))
                    return None
                store = get_index_store(session, settings)
                # the index advances whether or not the assignment below succeeds
                selected = select_deliverer(available, settings.distribution_strategy, store)
                # the selected deliverer first, then the rest least loaded first if it filled up meanwhile
                ordered = [selected] + [c for c in available if c is not selected]
                response = assign_to_first_available(session, send_request, ordered, settings)

            if response is None:
                return None
            response_id, deliverer_id = response.id, response.deliverer_id
            logger.info("Send request %s offered to deliverer %s (response %s, strategy %s)",
                        send_request_id, deliverer_id, response_id, settings.distribution_strategy.value)

        self.notifier(settings).notify(deliverer_id, EventKind.NEW_MATCH, {
            "response_id": response_id,
            "send_request_id": send_request_id,
        })
        return response_id

    def match_delivery_request(self, delivery_request_id: int) -> List[int]:
        """Offer waiting sender requests to a newly announced route, up to the deliverer's free capacity."""
        settings = get_settings()
        created = []
        with get_session() as session:
            delivery_request = session.get(DeliveryRequest, delivery_request_id)
            if delivery_request is None:
                raise RequestNotFoundError(f"delivery request {delivery_request_id} not found")
            if delivery_request.status not in MATCHABLE_STATUSES:
                logger.info("Delivery request %s is %s, not matched",
                            delivery_request_id, delivery_request.status.value)
                return created

            deliverer_id = delivery_request.user_id
            enabled = settings.distribution_enabled
            max_capacity = settings.max_deliverer_capacity
            remaining = max_capacity - active_load(session, deliverer_id)
            if enabled and remaining <= 0:
                logger.info("Deliverer %s at capacity, no matches for delivery request %s",
                            deliverer_id, delivery_request_id)
                return created

            sends = sorted(find_send_candidates(session, delivery_request), key=lambda s: (s.created_at, s.id))
            for send_request in sends:
                if enabled and len(created) >= remaining:
                    break
                if deliverer_id in declined_deliverer_ids(session, send_request.id):
                    continue
                with get_lock(f"send:{send_request.id}"), get_lock(f"deliverer:{deliverer_id}"):
                    if send_request_has_active_response(session, send_request.id):
                        continue
                    if enabled and settings.strict_capacity and not reserve_slot(session, deliverer_id, max_capacity):
                        break
                    response = create_or_update_response(
                        session,
                        deliverer_id=deliverer_id,
                        sender_id=send_request.user_id,
                        offer_type=OfferType.SEND,
                        receiving_request_id=delivery_request_id,
                        offering_request_id=send_request.id,
                    )
                    session.commit()
                    created.append((response.id, send_request.id))

            logger.info("Delivery request %s matched with %d of %d waiting send requests",
                        delivery_request_id, len(created), len(sends))

        notifier = self.notifier(settings)
        for response_id, send_request_id in created:
            notifier.notify(deliverer_id, EventKind.NEW_MATCH, {
                "response_id": response_id,
                "send_request_id": send_request_id,
            })
        return [response_id for response_id, _ in created]

    def run_matching(self) -> dict:
        """Recovery sweep: rebalance over-capacity deliverers, then match every waiting sender request."""
        settings = get_settings()
        rebalanced = 0
        with get_session() as session:
            if settings.distribution_enabled and settings.rebalancing_enabled:
                notifier = self.notifier(settings)
                for deliverer_id in over_capacity_deliverers(session, settings.max_deliverer_capacity):
                    rebalance_deliverer(session, deliverer_id, notifier, settings)
                    rebalanced += 1
            waiting = [
                s.id for s in session.query(SendRequest)
                .filter(SendRequest.status.in_(MATCHABLE_STATUSES))
                .order_by(SendRequest.created_at, SendRequest.id)
                .all()
            ]
        created = 0
        for send_request_id in waiting:
            if self.match_send_request(send_request_id) is not None:
                created += 1
        logger.info("Matching sweep: %d deliverers rebalanced, %d responses created", rebalanced, created)
        return {"rebalanced_deliverers": rebalanced, "created_responses": created}

    # -------------------------------------------------------------- acceptance

    def handle_user_response(self, response_id: int, user_id: int, action, complete: bool = True) -> ActionResult:
        """Apply a party's accept/reject and commit it.

        With ``complete=False`` only the transition is committed; the caller
        must pass the result to :meth:`complete_user_response`, e.g. from a
        background task.
        """
        action = Action(action)
        with get_lock(f"response:{response_id}"):
            with get_session() as session:
                response = session.get(Response, response_id, with_for_update=True)
                if response is None:
                    raise ResponseNotFoundError(f"response {response_id} not found")
                result = apply_party_action(session, response, user_id, action)
                if not result.success:
                    return result
                session.commit()

        if complete:
            self.complete_user_response(result)
        return result

    def complete_user_response(self, result: ActionResult) -> ActionResult:
        """Side effects of a committed action: follow-ups, then chat, then notifications.

        Follow-ups run first so a failing chat or notification collaborator
        cannot prevent rebalancing or redistribution. Collaborator errors
        propagate; :meth:`ensure_chat` can be retried.
        """
        if not result.success:
            return result
        self.run_followups(result)
        if result.fully_accepted:
            result.chat_id = self.ensure_chat(result.response_id)
        self._notify_action(result)
        return result

    def run_followups(self, result: ActionResult):
        """Rebalance after a deliverer acceptance, redistribute after a rejection."""
        if not result.success or (result.rebalance_deliverer_id is None and not result.redistribute):
            return None
        settings = get_settings()
        notifier = self.notifier(settings)
        with get_session() as session:
            response = session.get(Response, result.response_id)
            if response is None:
                raise ResponseNotFoundError(f"response {result.response_id} not found")
            if result.rebalance_deliverer_id is not None:
                return rebalance_after_acceptance(session, response, notifier, settings)
            if result.redistribute and response.overall_status == ResponseStatus.REJECTED:
                return redistribute_on_decline(session, response, notifier, settings)
        return None

    def ensure_chat(self, response_id: int) -> Optional[int]:
        """Create the conversation for a fully accepted response if it has none yet."""
        with get_lock(f"response:{response_id}"):
            with get_session() as session:
                response = session.get(Response, response_id, with_for_update=True)
                if response is None:
                    raise ResponseNotFoundError(f"response {response_id} not found")
                if response.overall_status != ResponseStatus.ACCEPTED:
                    return None
                if response.chat_id is not None:
                    return response.chat_id
                try:
                    chat_id = self.chats.create_or_reuse_thread(
                        session,
                        sender_id=response.sender_id,
                        deliverer_id=response.deliverer_id,
                        send_request_id=response.send_request_id,
                        delivery_request_id=response.delivery_request_id,
                    )
                except Exception:
                    logger.exception("Chat creation failed for response %s", response_id)
                    raise
                response.chat_id = chat_id
                session.add(response)
                session.commit()
                logger.info("Chat %s attached to response %s", chat_id, response_id)
                return chat_id

    def _notify_action(self, result: ActionResult):
        deliverer_id, sender_id = result.deliverer_id, result.sender_id
        notifier = self.notifier(get_settings())
        other = sender_id if result.role == Role.DELIVERER else deliverer_id
        payload = {"response_id": result.response_id, "status": result.overall_status.value}
        if result.fully_accepted:
            payload["chat_id"] = result.chat_id
            notifier.notify(deliverer_id, EventKind.MATCH_CONFIRMED, payload)
            notifier.notify(sender_id, EventKind.MATCH_CONFIRMED, payload)
        elif result.action == Action.ACCEPT:
            notifier.notify(other, EventKind.PARTY_ACCEPTED, payload)
        else:
            notifier.notify(other, EventKind.RESPONSE_REJECTED, payload)

    # ----------------------------------------------------------- observability

    def capacity_info(self, deliverer_id: int) -> dict:
        settings = get_settings()
        with get_session() as session:
            return capacity_info(session, deliverer_id, settings.max_deliverer_capacity).as_dict()

    def system_stats(self) -> dict:
        settings = get_settings()
        with get_session() as session:
            stats = system_capacity_stats(session, settings.max_deliverer_capacity)
            stats["redistribution"] = redistribution_stats(session)
            return stats

    def distribution_state(self) -> dict:
        settings = get_settings()
        with get_session() as session:
            state = get_index_store(session, settings).state()
        state.update({
            "enabled": settings.distribution_enabled,
            "strategy": settings.distribution_strategy.value,
            "max_deliverer_capacity": settings.max_deliverer_capacity,
            "rebalancing_enabled": settings.rebalancing_enabled,
            "redistribution_enabled": settings.redistribution_enabled,
        })
        return state

    def reset_distribution(self):
        settings = get_settings()
        with get_session() as session:
            get_index_store(session, settings).reset()
            session.commit()
