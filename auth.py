import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr
from pymongo.database import Database
import jwt
from passlib.context import CryptContext

from database import get_db, create_document, utcnow
from schemas import User as UserSchema
from utils import oid, serialize

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALGO = "HS256"
TOKEN_EXPIRE_MIN = int(os.getenv("TOKEN_EXPIRE_MIN", 60 * 24 * 7))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
security = HTTPBearer(auto_error=False)

router = APIRouter(tags=["auth"])

PUBLIC_USER_FIELDS = ("name", "email", "location", "favoritePlants", "profileImage")


def public_user(user: Dict[str, Any], fields=PUBLIC_USER_FIELDS) -> Dict[str, Any]:
    uid = str(user["_id"])
    return {"id": uid, **{f: serialize(user.get(f)) for f in fields}}


# ------------------ Sessions ------------------

def create_token(user: Dict[str, Any]) -> str:
    payload = {
        "sub": str(user["_id"]),
        "email": user["email"],
        "name": user.get("name"),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=TOKEN_EXPIRE_MIN),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGO)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    database: Database = Depends(get_db),
):
    if credentials is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    sub = payload.get("sub")
    if not sub or not ObjectId.is_valid(sub):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = database["user"].find_one({"_id": ObjectId(sub)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def current_user_id(user=Depends(get_current_user)) -> str:
    return str(user["_id"])


# ------------------ Auth ------------------

class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    location: str
    favoritePlants: List[str] = []


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


@router.post("/auth/register", status_code=201)
def register(payload: RegisterRequest, database: Database = Depends(get_db)):
    email = payload.email.lower()
    if not payload.name.strip() or not payload.location.strip() or not payload.password:
        raise HTTPException(status_code=400, detail="Name, location and password are required")
    if database["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")

    user_doc = create_document(database, "user", UserSchema(
        name=payload.name.strip(),
        email=email,
        password_hash=pwd_context.hash(payload.password),
        location=payload.location.strip(),
        favorite_plants=payload.favoritePlants,
    ))
    logger.info("Registered user %s", user_doc["_id"])
    return {"success": True, "user": public_user(user_doc), "token": create_token(user_doc)}


@router.post("/auth/login")
def login(payload: LoginRequest, database: Database = Depends(get_db)):
    email = payload.email.lower()
    user = database["user"].find_one({"email": email})
    if not user or not pwd_context.verify(payload.password, user.get("passwordHash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"success": True, "user": public_user(user), "token": create_token(user)}


@router.post("/auth/logout")
def logout():
    # tokens are stateless; the client drops its copy
    return {"success": True, "message": "Logout successful"}


# ------------------ Users ------------------

@router.get("/users")
def list_users(database: Database = Depends(get_db), user=Depends(get_current_user)):
    fields = ("name", "email", "location", "profileImage")
    users = database["user"].find({}, {f: 1 for f in fields})
    return {"success": True, "users": [public_user(u, fields) for u in users]}


@router.get("/users/{user_id}")
def get_user(user_id: str, database: Database = Depends(get_db), user=Depends(get_current_user)):
    found = database["user"].find_one({"_id": oid(user_id, "user id")})
    if not found:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "user": public_user(found)}


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    location: Optional[str] = None
    favoritePlants: Optional[List[str]] = None
    profileImage: Optional[str] = None


@router.put("/user")
def update_profile(payload: ProfileUpdate, database: Database = Depends(get_db), user=Depends(get_current_user)):
    if not (payload.name or "").strip() or not (payload.location or "").strip():
        raise HTTPException(status_code=400, detail="Name and location are required")
    update = {
        "name": payload.name.strip(),
        "location": payload.location.strip(),
        "favoritePlants": payload.favoritePlants or [],
        "updatedAt": utcnow(),
    }
    # an empty image keeps the current one
    if payload.profileImage:
        update["profileImage"] = payload.profileImage
    database["user"].update_one({"_id": user["_id"]}, {"$set": update})
    updated = database["user"].find_one({"_id": user["_id"]})
    return {"success": True, "message": "Profile updated successfully", "user": public_user(updated)}


class PasswordChange(BaseModel):
    currentPassword: Optional[str] = None
    newPassword: Optional[str] = None


@router.put("/user/password")
def change_password(payload: PasswordChange, database: Database = Depends(get_db), user=Depends(get_current_user)):
    if not payload.currentPassword or not payload.newPassword:
        raise HTTPException(status_code=400, detail="Current password and new password are required")
    if not pwd_context.verify(payload.currentPassword, user.get("passwordHash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    database["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"passwordHash": pwd_context.hash(payload.newPassword), "updatedAt": utcnow()}},
    )
    logger.info("Password changed for user %s", user["_id"])
    return {"success": True, "message": "Password updated successfully"}
