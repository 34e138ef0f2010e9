"""
Direct messages and per-conversation unread counters.

One conversation exists per unordered pair of users, found through `pairKey`
(the two user ids sorted and joined). `unreadCount.<userId>` is only ever
changed with atomic update operators so concurrent sends cannot lose an
increment.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import current_user_id
from database import get_db, utcnow
from schemas import Message as MessageSchema
from utils import canonical_id, populate, serialize

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


def pair_key(a: str, b: str) -> str:
    return ":".join(sorted((a, b)))


class MessageStore:
    def __init__(self, database: Database):
        self.database = database
        self.messages = database["message"]
        self.conversations = database["conversation"]

    def find_conversation(self, a: str, b: str) -> Optional[Dict[str, Any]]:
        return self.conversations.find_one({"pairKey": pair_key(a, b)})

    def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        conversations = list(
            self.conversations.find({"participants": user_id}).sort([("lastMessageDate", -1), ("_id", -1)])
        )
        return populate(self.database, conversations, ["participants"])

    def send(self, sender_id: str, receiver_id: str, content: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        now = utcnow()
        message = MessageSchema(
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            read=False,
            created_at=now,
        ).model_dump(by_alias=True)
        message["_id"] = self.messages.insert_one(message).inserted_id

        try:
            conversation = self._touch_conversation(sender_id, receiver_id, content, now)
        except PyMongoError:
            logger.exception("Conversation update failed, removing message %s", message["_id"])
            self.messages.delete_one({"_id": message["_id"]})
            raise
        logger.info("Message %s sent in conversation %s", message["_id"], conversation["_id"])
        return message, conversation

    def _touch_conversation(self, sender_id: str, receiver_id: str, content: str, now) -> Dict[str, Any]:
        key = pair_key(sender_id, receiver_id)
        update = {
            "$set": {"lastMessage": content, "lastMessageDate": now, "updatedAt": now},
            "$inc": {f"unreadCount.{receiver_id}": 1},
            "$setOnInsert": {"participants": [sender_id, receiver_id], "createdAt": now},
        }
        try:
            return self.conversations.find_one_and_update(
                {"pairKey": key}, update, upsert=True, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            # lost the creation race; the other request's document exists now
            del update["$setOnInsert"]
            return self.conversations.find_one_and_update(
                {"pairKey": key}, update, return_document=ReturnDocument.AFTER
            )

    def _mark_read(self, conversation: Dict[str, Any], reader_id: str, counterpart_id: str) -> Tuple[int, Dict[str, Any]]:
        result = self.messages.update_many(
            {"senderId": counterpart_id, "receiverId": reader_id, "read": False},
            {"$set": {"read": True}},
        )
        conversation = self.conversations.find_one_and_update(
            {"_id": conversation["_id"]},
            {"$set": {f"unreadCount.{reader_id}": 0}},
            return_document=ReturnDocument.AFTER,
        )
        return result.modified_count, conversation

    def fetch_thread(self, user_id: str, other_id: str) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
        conversation = self.find_conversation(user_id, other_id)
        if conversation is None:
            return [], None
        updated, conversation = self._mark_read(conversation, user_id, other_id)
        if updated:
            logger.info("Opened thread %s: %d messages marked read", conversation["_id"], updated)
        messages = list(
            self.messages.find({
                "$or": [
                    {"senderId": user_id, "receiverId": other_id},
                    {"senderId": other_id, "receiverId": user_id},
                ]
            }).sort([("createdAt", 1), ("_id", 1)])
        )
        return messages, conversation

    def mark_read(self, user_id: str, counterpart_id: str) -> int:
        conversation = self.find_conversation(user_id, counterpart_id)
        if conversation is None:
            return 0
        updated, _ = self._mark_read(conversation, user_id, counterpart_id)
        return updated

    def unread_count(self, user_id: str) -> int:
        return self.messages.count_documents({"receiverId": user_id, "read": False})


def get_message_store(database: Database = Depends(get_db)) -> MessageStore:
    return MessageStore(database)


# ------------------ Routes ------------------

class SendMessageRequest(BaseModel):
    receiverId: Optional[str] = None
    content: Optional[str] = None


class MarkReadRequest(BaseModel):
    senderId: Optional[str] = None


@router.get("")
def get_messages(
    userId: Optional[str] = None,
    me: str = Depends(current_user_id),
    store: MessageStore = Depends(get_message_store),
):
    if userId:
        messages, conversation = store.fetch_thread(me, canonical_id(userId, "user id"))
        return {"success": True, "messages": serialize(messages), "conversation": serialize(conversation)}
    return {"success": True, "conversations": serialize(store.list_conversations(me))}


@router.post("", status_code=201)
def send_message(
    payload: SendMessageRequest,
    me: str = Depends(current_user_id),
    store: MessageStore = Depends(get_message_store),
):
    content = payload.content or ""
    if not payload.receiverId or not content.strip():
        raise HTTPException(status_code=400, detail="Receiver ID and content are required")
    receiver_id = canonical_id(payload.receiverId, "receiver id")
    if receiver_id == me:
        raise HTTPException(status_code=400, detail="Cannot send a message to yourself")
    if not store.database["user"].find_one({"_id": ObjectId(receiver_id)}, {"_id": 1}):
        raise HTTPException(status_code=404, detail="Receiver not found")

    message, conversation = store.send(me, receiver_id, content)
    return {"success": True, "message": serialize(message), "conversation": serialize(conversation)}


@router.post("/mark-read")
def mark_read(
    payload: MarkReadRequest,
    me: str = Depends(current_user_id),
    store: MessageStore = Depends(get_message_store),
):
    if not payload.senderId:
        raise HTTPException(status_code=400, detail="Sender ID is required")
    sender_id = canonical_id(payload.senderId, "sender id")
    return {"success": True, "updatedCount": store.mark_read(me, sender_id)}


@router.get("/unread-count")
def unread_count(me: str = Depends(current_user_id), store: MessageStore = Depends(get_message_store)):
    return {"success": True, "count": store.unread_count(me)}
