from datetime import datetime
from typing import Any, Dict, Iterable, List

from bson import ObjectId
from fastapi import HTTPException
from pymongo.database import Database

USER_SUMMARY_FIELDS = ("name", "email", "location", "profileImage")


def oid(id_str: Any, label: str = "id") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return ObjectId(id_str)


def canonical_id(id_str: Any, label: str = "id") -> str:
    """Validate an incoming id and return its lowercase hex form."""
    return str(oid(id_str, label))


def extract_id(ref: Any) -> str:
    """Normalize a reference to its id string.

    Accepts a raw id string, an ObjectId, or a populated sub-document carrying
    either `_id` or `id`. Hex ids come back lowercase; returns "" for anything
    else.
    """
    if ref is None:
        return ""
    if isinstance(ref, str):
        return str(ObjectId(ref)) if ObjectId.is_valid(ref) else ref
    if isinstance(ref, ObjectId):
        return str(ref)
    if isinstance(ref, dict):
        if ref.get("_id") is not None:
            return extract_id(ref["_id"])
        if ref.get("id") is not None:
            return extract_id(ref["id"])
    return ""


def same_id(a: Any, b: Any) -> bool:
    left, right = extract_id(a), extract_id(b)
    return bool(left) and left == right


def serialize(value: Any) -> Any:
    """Make a MongoDB document JSON friendly: ids to hex strings, datetimes to ISO."""
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        out = {k: serialize(v) for k, v in value.items() if k != "passwordHash"}
        if "_id" in out:
            out["id"] = out["_id"]
        return out
    return value


def user_summaries(database: Database, ids: Iterable[str], fields=USER_SUMMARY_FIELDS) -> Dict[str, Dict[str, Any]]:
    object_ids = [ObjectId(i) for i in set(ids) if i and ObjectId.is_valid(i)]
    if not object_ids:
        return {}
    projection = {f: 1 for f in fields}
    summaries = {}
    for u in database["user"].find({"_id": {"$in": object_ids}}, projection):
        uid = str(u["_id"])
        summaries[uid] = {"_id": uid, "id": uid, **{f: u.get(f, "") for f in fields}}
    return summaries


def populate(database: Database, docs: List[Dict[str, Any]], keys: Iterable[str], fields=USER_SUMMARY_FIELDS) -> List[Dict[str, Any]]:
    """Replace user reference fields with profile summaries, in place.

    References to users that no longer exist are left as raw ids.
    """
    keys = list(keys)
    ids: List[str] = []
    for d in docs:
        for k in keys:
            value = d.get(k)
            ids.extend(value if isinstance(value, list) else [value])
    summaries = user_summaries(database, [extract_id(i) for i in ids], fields)
    for d in docs:
        for k in keys:
            value = d.get(k)
            if isinstance(value, list):
                d[k] = [summaries.get(extract_id(v), v) for v in value]
            elif value is not None:
                d[k] = summaries.get(extract_id(value), value)
    return docs

