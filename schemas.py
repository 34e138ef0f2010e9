"""
Database Schemas for EcoCropShare

Each Pydantic model below maps to a MongoDB collection (lowercased class name,
except PlantRequest which lives in "request").
Attributes are snake_case in Python and stored under their camelCase alias,
which is also the JSON wire format.
"""

from pydantic import BaseModel, ConfigDict, Field, EmailStr
from pydantic.alias_generators import to_camel
from typing import Optional, List, Literal
from datetime import datetime

PostType = Literal["seed", "harvest"]
ExchangeType = Literal["barter", "free"]
PostStatus = Literal["available", "completed"]
RequestStatus = Literal["open", "fulfilled"]
ParentType = Literal["post", "request"]
HistoryType = Literal["post", "request"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class User(CamelModel):
    name: str
    email: EmailStr
    password_hash: str
    location: str
    favorite_plants: List[str] = Field(default_factory=list)
    profile_image: str = ""


class Post(CamelModel):
    user_id: str
    title: str
    type: PostType
    exchange_type: ExchangeType = "barter"
    quantity: int = Field(..., ge=1)
    location: str
    images: List[str] = Field(default_factory=list)
    description: str
    status: PostStatus = "available"


class PlantRequest(CamelModel):
    user_id: str
    plant_name: str
    location: str
    reason: str
    category: str = "buah"
    quantity: str = "1"
    status: RequestStatus = "open"


class Comment(CamelModel):
    user_id: str
    parent_id: str
    parent_type: ParentType
    content: str


class Article(CamelModel):
    user_id: str
    title: str
    content: str
    image: str = ""
    category: str = ""
    tags: List[str] = Field(default_factory=list)


class History(CamelModel):
    post_id: Optional[str] = None
    request_id: Optional[str] = None
    user_id: str
    partner_id: str
    plant_name: str
    date: datetime
    notes: str = ""
    type: HistoryType


class Message(CamelModel):
    sender_id: str
    receiver_id: str
    content: str
    read: bool = False
    created_at: datetime

