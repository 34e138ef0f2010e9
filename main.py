import os
import logging
from contextlib import asynccontextmanager
from typing import Dict, Any, List, Optional

from bson import ObjectId
from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from pydantic import BaseModel, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import router as auth_router, current_user_id
from database import get_db, create_document, get_documents, ensure_indexes, utcnow
from fulfillment import router as history_router
from messaging import router as messages_router
from schemas import (
    Post as PostSchema,
    PlantRequest as PlantRequestSchema,
    Comment as CommentSchema,
    Article as ArticleSchema,
    PostType,
    ExchangeType,
)
from utils import canonical_id, oid, populate, same_id, serialize

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(get_db())
    except RuntimeError as exc:
        logger.warning("%s Database routes will fail.", exc)
    yield


app = FastAPI(title="EcoCropShare API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(messages_router)
app.include_router(history_router)


# ------------------ Error envelope ------------------

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        problems.append(f"{field}: {err.get('msg')}" if field else err.get("msg", "Invalid input"))
    return JSONResponse(status_code=400, content={"success": False, "message": "; ".join(problems)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": str(exc) or "Internal server error"})


# ------------------ Shared helpers ------------------

def load_owned(database: Database, collection: str, item_id: str, user_id: str, label: str) -> Dict[str, Any]:
    item = database[collection].find_one({"_id": oid(item_id, f"{label} id")})
    if not item:
        raise HTTPException(status_code=404, detail=f"{label.capitalize()} not found")
    if not same_id(item.get("userId"), user_id):
        raise HTTPException(status_code=403, detail=f"Not allowed to modify this {label}")
    return item


def with_comment_counts(database: Database, items: List[Dict[str, Any]], parent_type: str) -> List[Dict[str, Any]]:
    ids = [str(it["_id"]) for it in items]
    counts = {
        row["_id"]: row["count"]
        for row in database["comment"].aggregate([
            {"$match": {"parentType": parent_type, "parentId": {"$in": ids}}},
            {"$group": {"_id": "$parentId", "count": {"$sum": 1}}},
        ])
    }
    for it in items:
        it["commentCount"] = counts.get(str(it["_id"]), 0)
    return items


def comments_for(database: Database, parent_id: str, parent_type: str) -> List[Dict[str, Any]]:
    comments = get_documents(
        database, "comment", {"parentId": parent_id, "parentType": parent_type}, sort=[("createdAt", 1), ("_id", 1)]
    )
    return populate(database, comments, ["userId"], ("name", "profileImage"))


def listing_filter(userId: Optional[str], status: Optional[str]) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if userId:
        filt["userId"] = canonical_id(userId, "user id")
    if status:
        filt["status"] = status
    return filt


def apply_update(database: Database, collection: str, item: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    changes = {k: v for k, v in changes.items() if v not in (None, "", [])}
    changes["updatedAt"] = utcnow()
    database[collection].update_one({"_id": item["_id"]}, {"$set": changes})
    return database[collection].find_one({"_id": item["_id"]})


def delete_with_comments(database: Database, collection: str, item: Dict[str, Any], parent_type: str) -> int:
    database[collection].delete_one({"_id": item["_id"]})
    removed = database["comment"].delete_many({"parentId": str(item["_id"]), "parentType": parent_type}).deleted_count
    logger.info("Deleted %s %s and %d comments", parent_type, item["_id"], removed)
    return removed


# ------------------ Posts ------------------

class PostCreate(BaseModel):
    title: str = Field(..., min_length=1)
    type: PostType
    exchangeType: ExchangeType = "barter"
    quantity: int = Field(..., ge=1)
    location: str = Field(..., min_length=1)
    images: List[str] = []
    description: str = Field(..., min_length=1)


class PostUpdate(BaseModel):
    title: Optional[str] = None
    type: Optional[PostType] = None
    exchangeType: Optional[ExchangeType] = None
    quantity: Optional[int] = Field(None, ge=1)
    location: Optional[str] = None
    images: Optional[List[str]] = None
    description: Optional[str] = None


@app.get("/posts")
def list_posts(
    userId: Optional[str] = None,
    status: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    database: Database = Depends(get_db),
):
    posts = get_documents(database, "post", listing_filter(userId, status), limit=limit, sort=[("createdAt", -1), ("_id", -1)])
    with_comment_counts(database, posts, "post")
    populate(database, posts, ["userId"], ("name", "location", "profileImage"))
    return {"success": True, "posts": serialize(posts)}


@app.post("/posts", status_code=201)
def create_post(payload: PostCreate, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    post = create_document(database, "post", PostSchema(
        user_id=me,
        title=payload.title,
        type=payload.type,
        exchange_type=payload.exchangeType,
        quantity=payload.quantity,
        location=payload.location,
        images=payload.images,
        description=payload.description,
        status="available",
    ))
    return {"success": True, "post": serialize(post)}


@app.get("/posts/{post_id}")
def get_post(post_id: str, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    post = database["post"].find_one({"_id": oid(post_id, "post id")})
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")
    populate(database, [post], ["userId"], ("name", "location", "profileImage", "favoritePlants"))
    comments = comments_for(database, str(post["_id"]), "post")
    return {"success": True, "post": serialize(post), "comments": serialize(comments)}


@app.put("/posts/{post_id}")
def update_post(post_id: str, payload: PostUpdate, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    post = load_owned(database, "post", post_id, me, "post")
    updated = apply_update(database, "post", post, payload.model_dump())
    return {"success": True, "post": serialize(updated)}


@app.delete("/posts/{post_id}")
def delete_post(post_id: str, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    post = load_owned(database, "post", post_id, me, "post")
    delete_with_comments(database, "post", post, "post")
    return {"success": True, "message": "Post deleted"}


# ------------------ Requests ------------------

class RequestCreate(BaseModel):
    plantName: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    category: Optional[str] = None
    quantity: Optional[str] = None


class RequestUpdate(BaseModel):
    plantName: Optional[str] = None
    location: Optional[str] = None
    reason: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[str] = None


@app.get("/requests")
def list_requests(
    userId: Optional[str] = None,
    status: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    database: Database = Depends(get_db),
):
    requests = get_documents(database, "request", listing_filter(userId, status), limit=limit, sort=[("createdAt", -1), ("_id", -1)])
    with_comment_counts(database, requests, "request")
    populate(database, requests, ["userId"], ("name", "location", "profileImage"))
    return {"success": True, "requests": serialize(requests)}


@app.post("/requests", status_code=201)
def create_request(payload: RequestCreate, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    plant_request = create_document(database, "request", PlantRequestSchema(
        user_id=me,
        plant_name=payload.plantName,
        location=payload.location,
        reason=payload.reason,
        category=payload.category or "buah",
        quantity=payload.quantity or "1",
        status="open",
    ))
    return {"success": True, "request": serialize(plant_request)}


@app.get("/requests/{request_id}")
def get_request(request_id: str, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    plant_request = database["request"].find_one({"_id": oid(request_id, "request id")})
    if not plant_request:
        raise HTTPException(status_code=404, detail="Request not found")
    populate(database, [plant_request], ["userId"], ("name", "location", "profileImage", "favoritePlants"))
    comments = comments_for(database, str(plant_request["_id"]), "request")
    return {"success": True, "request": serialize(plant_request), "comments": serialize(comments)}


@app.put("/requests/{request_id}")
def update_request(request_id: str, payload: RequestUpdate, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    plant_request = load_owned(database, "request", request_id, me, "request")
    updated = apply_update(database, "request", plant_request, payload.model_dump())
    return {"success": True, "request": serialize(updated)}


@app.delete("/requests/{request_id}")
def delete_request(request_id: str, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    plant_request = load_owned(database, "request", request_id, me, "request")
    delete_with_comments(database, "request", plant_request, "request")
    return {"success": True, "message": "Request deleted"}


# ------------------ Comments ------------------

class CommentCreate(BaseModel):
    parentId: Optional[str] = None
    parentType: Optional[str] = None
    content: Optional[str] = None


@app.post("/comments", status_code=201)
def create_comment(payload: CommentCreate, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    if not payload.parentId or not payload.parentType or not (payload.content or "").strip():
        raise HTTPException(status_code=400, detail="Incomplete data")
    if payload.parentType not in ("post", "request"):
        raise HTTPException(status_code=400, detail="Invalid parent type")
    parent_id = canonical_id(payload.parentId, "parent id")
    if not database[payload.parentType].find_one({"_id": ObjectId(parent_id)}, {"_id": 1}):
        raise HTTPException(status_code=404, detail=f"{payload.parentType.capitalize()} not found")

    comment = create_document(database, "comment", CommentSchema(
        user_id=me,
        parent_id=parent_id,
        parent_type=payload.parentType,
        content=payload.content,
    ))
    populate(database, [comment], ["userId"], ("name", "profileImage"))
    return {"success": True, "comment": serialize(comment)}


@app.delete("/comments/{comment_id}")
def delete_comment(comment_id: str, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    comment = load_owned(database, "comment", comment_id, me, "comment")
    database["comment"].delete_one({"_id": comment["_id"]})
    return {"success": True, "message": "Comment deleted"}


# ------------------ Articles ------------------

RELATED_ARTICLES_LIMIT = 3


class ArticleBody(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    image: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None


def require_title_and_content(payload: ArticleBody):
    if not (payload.title or "").strip() or not (payload.content or "").strip():
        raise HTTPException(status_code=400, detail="Title and content are required")


def related_articles(database: Database, article: Dict[str, Any]) -> List[Dict[str, Any]]:
    matches = []
    if article.get("category"):
        matches.append({"category": article["category"]})
    if article.get("tags"):
        matches.append({"tags": {"$in": article["tags"]}})
    filt: Dict[str, Any] = {"_id": {"$ne": article["_id"]}}
    if matches:
        filt["$or"] = matches
    related = list(
        database["article"]
        .find(filt, {"title": 1, "image": 1, "createdAt": 1, "category": 1, "userId": 1})
        .sort([("createdAt", -1), ("_id", -1)])
        .limit(RELATED_ARTICLES_LIMIT)
    )
    return populate(database, related, ["userId"], ("name",))


@app.get("/articles")
def list_articles(
    userId: Optional[str] = None,
    category: Optional[str] = None,
    tag: Optional[str] = None,
    search: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    database: Database = Depends(get_db),
):
    filt: Dict[str, Any] = {}
    if userId:
        filt["userId"] = canonical_id(userId, "user id")
    if category:
        filt["category"] = category
    if tag:
        filt["tags"] = {"$in": [tag]}
    if search:
        filt["$or"] = [
            {"title": {"$regex": search, "$options": "i"}},
            {"content": {"$regex": search, "$options": "i"}},
            {"tags": {"$regex": search, "$options": "i"}},
        ]
    articles = get_documents(database, "article", filt, limit=limit, sort=[("createdAt", -1), ("_id", -1)])
    populate(database, articles, ["userId"], ("name", "profileImage"))
    return {"success": True, "articles": serialize(articles)}


@app.post("/articles", status_code=201)
def create_article(payload: ArticleBody, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    require_title_and_content(payload)
    article = create_document(database, "article", ArticleSchema(
        user_id=me,
        title=payload.title,
        content=payload.content,
        image=payload.image or "",
        category=payload.category or "",
        tags=payload.tags or [],
    ))
    return {"success": True, "article": serialize(article)}


@app.get("/articles/{article_id}")
def get_article(article_id: str, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    article = database["article"].find_one({"_id": oid(article_id, "article id")})
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    related = related_articles(database, article)
    populate(database, [article], ["userId"], ("name", "profileImage", "location", "favoritePlants"))
    return {"success": True, "article": serialize(article), "relatedArticles": serialize(related)}


@app.put("/articles/{article_id}")
def update_article(article_id: str, payload: ArticleBody, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    article = load_owned(database, "article", article_id, me, "article")
    require_title_and_content(payload)
    updated = apply_update(database, "article", article, payload.model_dump())
    return {"success": True, "article": serialize(updated)}


@app.delete("/articles/{article_id}")
def delete_article(article_id: str, me: str = Depends(current_user_id), database: Database = Depends(get_db)):
    article = load_owned(database, "article", article_id, me, "article")
    database["article"].delete_one({"_id": article["_id"]})
    return {"success": True, "message": "Article deleted"}


# ------------------ Health ------------------

@app.get("/")
def read_root():
    return {"message": "EcoCropShare Backend Running"}


@app.get("/test")
def test_database():
    report: Dict[str, Any] = {
        "backend": "running",
        "database": "not configured",
        "databaseName": None,
        "collections": [],
    }
    try:
        database = get_db()
    except RuntimeError as exc:
        report["message"] = str(exc)
        return report

    report["databaseName"] = database.name
    try:
        report["collections"] = sorted(database.list_collection_names())[:10]
        report["database"] = "connected"
    except PyMongoError as exc:
        logger.warning("Database check failed: %s", exc)
        report["database"] = "error"
        report["message"] = str(exc)[:100]
    return report


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
