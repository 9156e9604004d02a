"""Pydantic models for the shared couple data.

Rows arrive from Supabase as plain dicts; every collection in the store holds
these validated models instead, so a mood category outside the enum can never
reach local state.
"""

from __future__ import annotations

from datetime import date as calendar_date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MoodCategory(str, Enum):
    """The five moods offered by the daily check-in."""
    HAPPY = "happy"
    EXCITED = "excited"
    NEUTRAL = "neutral"
    TIRED = "tired"
    SAD = "sad"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


WISH_CATEGORIES: List[str] = ["Viajes", "Películas", "Compras", "Aventura", "Comida", "Otro"]
NOTE_COLORS: List[str] = ["yellow", "rose", "blue", "green", "purple"]


class Identity(BaseModel):
    """The signed-in user and the tokens of the current session."""

    user_id: str
    email: Optional[str] = None
    access_token: str = ""
    refresh_token: str = ""
    expires_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        if self.email:
            return self.email.split("@")[0]
        return "Amor"


class Record(BaseModel):
    """Base for every row kept in a store collection."""

    model_config = ConfigDict(extra="ignore")

    id: str

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        # bigint identity columns come back as ints
        if isinstance(v, int):
            return str(v)
        return v


class Mood(Record):
    mood: MoodCategory
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    note: Optional[str] = None
    user_id: Optional[str] = None


class WishItem(Record):
    text: str
    category: str = "Otro"
    description: Optional[str] = None
    completed: bool = False
    created_at: Optional[datetime] = None


class Coupon(Record):
    title: str
    redeemed: bool = False


class Location(BaseModel):
    lat: float
    lng: float
    name: str


class Milestone(Record):
    title: str
    date: calendar_date
    description: str = ""
    image: Optional[str] = None
    location: Optional[Location] = None


class Note(Record):
    content: str
    color: str = "yellow"
    author: str = "user"
    created_at: Optional[datetime] = None


class Message(Record):
    content: str
    sender_id: str
    created_at: Optional[datetime] = None
    read: bool = False


class Folder(Record):
    name: str
    parent_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("parent_id", mode="before")
    @classmethod
    def coerce_parent(cls, v):
        if isinstance(v, int):
            return str(v)
        return v


class Memory(Record):
    title: str
    description: Optional[str] = ""
    date: Optional[datetime] = None
    media_url: Optional[str] = ""
    external_url: Optional[str] = None
    media_type: MediaType = MediaType.IMAGE
    folder_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("folder_id", mode="before")
    @classmethod
    def coerce_folder(cls, v):
        if isinstance(v, int):
            return str(v)
        return v

    @property
    def display_url(self) -> Optional[str]:
        return self.external_url or self.media_url or None


class Countdown(BaseModel):
    """Target shown by the countdown widget."""

    date: datetime
    title: str


# Used whenever ``app_settings`` is empty or holds something unusable.
DEFAULT_COUNTDOWN: Dict[str, Any] = {
    "date": "2026-12-21T00:00:00+00:00",
    "title": "Nuestro aniversario",
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    "countdown": DEFAULT_COUNTDOWN,
    "music": {"url": "https://open.spotify.com/embed/track/2Lhdl74nwwVGOE2Gv35QuK?utm_source=generator"},
    "streaks": {"count": 0},
    "next_date": {"title": "", "date": None},
}

# Seeded locally when neither the backend nor the device cache has anything.
DEFAULT_WISH_ITEMS: List[Dict[str, Any]] = [
    {"id": "1", "text": "Ver una aurora boreal", "category": "Aventura", "completed": False},
    {"id": "2", "text": "Cocinar pasta casera juntos", "category": "Comida", "completed": False},
]

DEFAULT_COUPONS: List[Dict[str, Any]] = [
    {"id": "1", "title": "Vale por un masaje de 15 min", "redeemed": False},
    {"id": "2", "title": "Vale por elegir la película", "redeemed": False},
    {"id": "3", "title": "Vale por una cena romántica", "redeemed": False},
]
