import logging
from typing import Optional

from sqlalchemy import and_, or_

from models import Chat, ChatStatus

logger = logging.getLogger(__name__)


class ChatService:
    """Conversation threads between the two parties of a sealed match."""

    def create_or_reuse_thread(self, session, sender_id: int, deliverer_id: int,
                               send_request_id: Optional[int] = None,
                               delivery_request_id: Optional[int] = None) -> int:
        """Return the thread between the two users, creating or reactivating it. The caller commits."""
        chat = (
            session.query(Chat)
            .filter(or_(
                and_(Chat.sender_id == sender_id, Chat.receiver_id == deliverer_id),
                and_(Chat.sender_id == deliverer_id, Chat.receiver_id == sender_id),
            ))
            .order_by(Chat.id)
            .first()
        )
        if chat is not None:
            if chat.status != ChatStatus.ACTIVE:
                chat.status = ChatStatus.ACTIVE
                session.add(chat)
                session.flush()
                logger.info("Reactivated chat %s between %s and %s", chat.id, sender_id, deliverer_id)
            return chat.id

        chat = Chat(
            sender_id=sender_id,
            receiver_id=deliverer_id,
            send_request_id=send_request_id,
            delivery_request_id=delivery_request_id,
        )
        session.add(chat)
        session.flush()
        logger.info("Created chat %s between sender %s and deliverer %s", chat.id, sender_id, deliverer_id)
        return chat.id
