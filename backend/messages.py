import logging
from typing import Any, List, Mapping, Optional, Union

from database import MESSAGES, USERS, Database, persistence, to_public, utcnow
from errors import ForbiddenError, NotFoundError, ValidationError
from events import MESSAGE_SENT, EventSink, emit
from schemas import Identity, MessageCreate
from validators import parse

logger = logging.getLogger(__name__)


def between(user_a: str, user_b: str) -> dict:
    return {"$or": [
        {"senderId": user_a, "recipientId": user_b},
        {"senderId": user_b, "recipientId": user_a},
    ]}


class MessageService:
    def __init__(self, database: Database, events: EventSink):
        self.database = database
        self.events = events

    async def send(self, payload: Union[MessageCreate, Mapping[str, Any]], actor: Optional[Identity] = None) -> dict:
        payload = parse(MessageCreate, payload)
        if actor is not None and actor.id != payload.senderId:
            raise ForbiddenError("Messages can only be sent as yourself")
        async with persistence("message_recipient"):
            recipient = await self.database.get_document(USERS, payload.recipientId)
        if not recipient:
            raise NotFoundError("Recipient not found")
        msg_doc = {
            "senderId": payload.senderId,
            "recipientId": payload.recipientId,
            "text": payload.text,
            "timestamp": utcnow(),
        }
        async with persistence("send_message"):
            msg_doc = await self.database.create_document(MESSAGES, msg_doc)
        message = to_public(msg_doc)
        logger.info("message_sent id=%s sender_id=%s recipient_id=%s", message["id"], message["senderId"], message["recipientId"])
        await emit(self.events, MESSAGE_SENT, message)
        return message

    async def list_between(self, user_a: Optional[str], user_b: Optional[str]) -> List[dict]:
        if not user_a or not user_b:
            raise ValidationError(["Both userIds required"])
        async with persistence("list_messages"):
            docs = await self.database.get_documents(MESSAGES, between(user_a, user_b), sort=[("timestamp", 1), ("_id", 1)])
        return [to_public(d) for d in docs]

    async def list_contacts(self, user_id: str) -> List[dict]:
        """Distinct counterparts of ``user_id``, most recent conversation first."""
        flt = {"$or": [{"senderId": user_id}, {"recipientId": user_id}]}
        async with persistence("list_contacts"):
            docs = await self.database.get_documents(MESSAGES, flt, sort=[("timestamp", -1), ("_id", -1)])
        seen = []
        for d in docs:
            other = d["recipientId"] if d["senderId"] == user_id else d["senderId"]
            if other not in seen:
                seen.append(other)
        return [{"contactId": c} for c in seen]
