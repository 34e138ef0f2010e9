"""
Exchange fulfillment and the history ledger.

Fulfilling a post or request flips its status and writes exactly one History
row. The flip is conditional on the open status, so it doubles as the guard
against fulfilling twice; if the History insert fails afterwards the flip is
reverted before the error is reported.
"""

import logging
from typing import Any, Dict, List, Literal, Optional, Tuple

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import current_user_id
from database import get_db, utcnow
from schemas import History as HistorySchema
from utils import canonical_id, extract_id, oid, populate, same_id, serialize

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/history", tags=["history"])

# kind -> (collection, open status, closed status, field copied into plantName)
SOURCES = {
    "post": ("post", "available", "completed", "title"),
    "request": ("request", "open", "fulfilled", "plantName"),
}


class ExchangeLedger:
    def __init__(self, database: Database):
        self.database = database
        self.history = database["history"]

    def fulfill_post(self, post_id: str, caller_id: str, partner_id: str, notes: str = "",
                     plant_name: Optional[str] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        return self._fulfill("post", post_id, caller_id, partner_id, notes, plant_name)

    def fulfill_request(self, request_id: str, caller_id: str, partner_id: str, notes: str = "",
                        plant_name: Optional[str] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        return self._fulfill("request", request_id, caller_id, partner_id, notes, plant_name)

    def _fulfill(self, kind, source_id, caller_id, partner_id, notes, plant_name):
        collection_name, open_status, closed_status, name_field = SOURCES[kind]
        collection = self.database[collection_name]

        source = collection.find_one({"_id": oid(source_id, f"{kind} id")})
        if not source:
            raise HTTPException(status_code=404, detail=f"{kind.capitalize()} not found")
        if not same_id(source.get("userId"), caller_id):
            raise HTTPException(status_code=403, detail=f"Only the owner can complete this {kind}")
        if source.get("status") != open_status:
            raise HTTPException(status_code=400, detail=f"{kind.capitalize()} is already {source.get('status')}")
        partner_id = canonical_id(partner_id, "partner id")
        if same_id(partner_id, caller_id):
            raise HTTPException(status_code=400, detail="Partner must be another user")
        if not self.database["user"].find_one({"_id": ObjectId(partner_id)}, {"_id": 1}):
            raise HTTPException(status_code=404, detail="Partner not found")

        now = utcnow()
        updated = collection.find_one_and_update(
            {"_id": source["_id"], "status": open_status},
            {"$set": {"status": closed_status, "updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise HTTPException(status_code=400, detail=f"{kind.capitalize()} is already {closed_status}")

        entry = HistorySchema(
            post_id=str(source["_id"]) if kind == "post" else None,
            request_id=str(source["_id"]) if kind == "request" else None,
            user_id=extract_id(source["userId"]),
            partner_id=partner_id,
            plant_name=plant_name or source.get(name_field, ""),
            date=now,
            notes=notes or "",
            type=kind,
        ).model_dump(by_alias=True, exclude_none=True)
        try:
            entry["_id"] = self.history.insert_one(entry).inserted_id
        except PyMongoError:
            logger.exception("History insert failed for %s %s, reverting status", kind, source["_id"])
            collection.update_one(
                {"_id": source["_id"], "status": closed_status},
                {"$set": {"status": open_status, "updatedAt": source.get("updatedAt", now)}},
            )
            raise
        logger.info("%s %s fulfilled with partner %s (history %s)", kind, source["_id"], partner_id, entry["_id"])
        return updated, entry

    def list_for(self, user_id: str, type_: Optional[str] = None, role: Optional[str] = None) -> List[Dict[str, Any]]:
        if role == "giver":
            query: Dict[str, Any] = {"userId": user_id}
        elif role == "receiver":
            query = {"partnerId": user_id}
        else:
            query = {"$or": [{"userId": user_id}, {"partnerId": user_id}]}
        if type_:
            query["type"] = type_
        rows = list(self.history.find(query).sort([("date", -1), ("_id", -1)]))
        populate(self.database, rows, ["userId", "partnerId"], ("name", "profileImage"))
        for row in rows:
            row["role"] = role_of(row, user_id)
        return rows

    def get_for(self, history_id: str, user_id: str) -> Dict[str, Any]:
        row = self.history.find_one({"_id": oid(history_id, "history id")})
        if not row:
            raise HTTPException(status_code=404, detail="History not found")
        populate(self.database, [row], ["userId", "partnerId"], ("name", "location", "profileImage"))
        role = role_of(row, user_id)
        if role is None:
            raise HTTPException(status_code=403, detail="You do not have access to this history entry")
        row["role"] = role
        return row


def role_of(row: Dict[str, Any], user_id: str) -> Optional[str]:
    if same_id(row.get("userId"), user_id):
        return "giver"
    if same_id(row.get("partnerId"), user_id):
        return "receiver"
    return None


def get_ledger(database: Database = Depends(get_db)) -> ExchangeLedger:
    return ExchangeLedger(database)


# ------------------ Routes ------------------

class HistoryCreate(BaseModel):
    postId: Optional[str] = None
    requestId: Optional[str] = None
    partnerId: Optional[str] = None
    plantName: Optional[str] = None
    notes: Optional[str] = None
    type: Optional[str] = None


@router.post("", status_code=201)
def create_history(payload: HistoryCreate, me: str = Depends(current_user_id), ledger: ExchangeLedger = Depends(get_ledger)):
    if not (payload.postId or payload.requestId) or not payload.partnerId or not payload.type:
        raise HTTPException(status_code=400, detail="Incomplete data")
    if payload.type not in SOURCES:
        raise HTTPException(status_code=400, detail="Invalid type")
    if payload.postId and payload.requestId:
        raise HTTPException(status_code=400, detail="Give either postId or requestId, not both")

    if payload.type == "post":
        if not payload.postId:
            raise HTTPException(status_code=400, detail="postId is required for type 'post'")
        source, entry = ledger.fulfill_post(payload.postId, me, payload.partnerId, payload.notes, payload.plantName)
        return {"success": True, "history": serialize(entry), "post": serialize(source)}

    if not payload.requestId:
        raise HTTPException(status_code=400, detail="requestId is required for type 'request'")
    source, entry = ledger.fulfill_request(payload.requestId, me, payload.partnerId, payload.notes, payload.plantName)
    return {"success": True, "history": serialize(entry), "request": serialize(source)}


@router.get("")
def list_history(
    type_: Optional[Literal["post", "request"]] = Query(None, alias="type"),
    role: Optional[Literal["giver", "receiver"]] = Query(None),
    me: str = Depends(current_user_id),
    ledger: ExchangeLedger = Depends(get_ledger),
):
    return {"success": True, "history": serialize(ledger.list_for(me, type_, role))}


@router.get("/{history_id}")
def get_history(history_id: str, me: str = Depends(current_user_id), ledger: ExchangeLedger = Depends(get_ledger)):
    return {"success": True, "history": serialize(ledger.get_for(history_id, me))}
