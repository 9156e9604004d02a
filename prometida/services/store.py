"""Application state store.

One ``AppStore`` holds everything a signed-in user sees: the identity, the
theme and one ``Collection`` per shared table. The store is only mutated on
its event loop and only through the methods below. Every optimistic mutation
goes through ``AppStore._optimistic``:

1. capture what is needed to undo the change (a snapshot or a prior value),
2. apply the change locally before the first suspension point,
3. await the backend and either confirm or undo.

Logout bumps ``_generation``; a confirmation or rollback that started under
an older generation is dropped, so nothing from the previous user survives.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, Generic, Iterator, List, Optional, Set, Type, TypeVar
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError as SchemaError

from ..config import NOTE_PUSH_HEADING, Config, PushConfig
from ..errors import AuthError, RemoteError, ValidationError
from ..models import (
    DEFAULT_COUNTDOWN,
    DEFAULT_COUPONS,
    DEFAULT_SETTINGS,
    DEFAULT_WISH_ITEMS,
    WISH_CATEGORIES,
    Countdown,
    Coupon,
    Folder,
    Identity,
    Memory,
    Message,
    Milestone,
    Mood,
    MoodCategory,
    Note,
    Record,
    WishItem,
)
from ..utils.auth import ensure_session_fresh
from .gateway import MediaUpload, RemoteGateway
from .local_cache import LocalCache
from .realtime import RealtimeListener

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)

TEMP_PREFIX = "temp-"

# Mirrored to the device cache and used when the backend cannot be reached.
FALLBACK_COLLECTIONS = ("bucket_list", "coupons", "milestones")

PREVIEW_LENGTH = 50


def _temp_id() -> str:
    return f"{TEMP_PREFIX}{uuid4().hex}"


def _memory_sort_key(memory: Memory) -> datetime:
    if memory.date is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    if memory.date.tzinfo is None:
        return memory.date.replace(tzinfo=timezone.utc)
    return memory.date


def message_preview(content: str) -> str:
    suffix = "..." if len(content) > PREVIEW_LENGTH else ""
    return f"💬 {content[:PREVIEW_LENGTH]}{suffix}"


@dataclass
class Notice:
    """A transient message for the view (a toast)."""

    level: str
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Collection(Generic[R]):
    """Ordered records keyed by ``id``; an id is never held twice."""

    def __init__(self, name: str, model: Type[R], newest_first: bool = False) -> None:
        self.name = name
        self.model = model
        self.newest_first = newest_first
        self._items: List[R] = []

    def __iter__(self) -> Iterator[R]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __reversed__(self) -> Iterator[R]:
        return reversed(list(self._items))

    @property
    def items(self) -> List[R]:
        return list(self._items)

    def ids(self) -> List[str]:
        return [item.id for item in self._items]

    def index_of(self, record_id: str) -> int:
        for index, item in enumerate(self._items):
            if item.id == record_id:
                return index
        return -1

    def contains(self, record_id: str) -> bool:
        return self.index_of(record_id) >= 0

    def get(self, record_id: str) -> Optional[R]:
        index = self.index_of(record_id)
        return self._items[index] if index >= 0 else None

    def snapshot(self) -> List[R]:
        return list(self._items)

    def restore(self, snapshot: List[R]) -> None:
        self._items = list(snapshot)

    def reset(self, items: List[R]) -> None:
        self._items = []
        for item in items:
            if not self.contains(item.id):
                self._items.append(item)

    def add(self, item: R) -> bool:
        """Insert at the head (newest first) or tail; returns False for a known id."""
        if self.contains(item.id):
            return False
        if self.newest_first:
            self._items.insert(0, item)
        else:
            self._items.append(item)
        return True

    def replace(self, record_id: str, item: R) -> bool:
        index = self.index_of(record_id)
        if index < 0:
            return False
        self._items[index] = item
        return True

    def update(self, record_id: str, **changes: Any) -> Optional[R]:
        """Apply field changes in place and return the previous record."""
        index = self.index_of(record_id)
        if index < 0:
            return None
        previous = self._items[index]
        self._items[index] = previous.model_copy(update=changes)
        return previous

    def remove(self, record_id: str) -> Optional[R]:
        index = self.index_of(record_id)
        if index < 0:
            return None
        return self._items.pop(index)

    def settle(self, temp_id: str, record: R) -> None:
        """Swap a temporary entry for the server-confirmed record.

        If the realtime echo already delivered ``record`` the temporary entry
        is simply dropped.
        """
        if record.id != temp_id and self.contains(record.id):
            self.remove(temp_id)
        elif not self.replace(temp_id, record):
            self.add(record)

    def sort(self, key: Callable[[R], Any], reverse: bool = False) -> None:
        self._items.sort(key=key, reverse=reverse)

    def dump(self) -> List[Dict[str, Any]]:
        return [item.model_dump(mode="json") for item in self._items]


class AppStore:
    """Single owned state object for one signed-in user."""

    def __init__(
        self,
        gateway: RemoteGateway,
        cache: Optional[LocalCache] = None,
        config: Optional[Config] = None,
        realtime: bool = True,
    ) -> None:
        self._gateway = gateway
        self._cache = cache
        self._config = config
        self._realtime_enabled = realtime
        self._generation = 0
        self._background: Set[asyncio.Task] = set()
        self._auth_subscription: Any = None

        self.identity: Optional[Identity] = None
        self.theme: str = self._cache.load("theme", "light") if self._cache else "light"
        self.settings: Dict[str, Any] = deepcopy(DEFAULT_SETTINGS)
        self.notices: Deque[Notice] = deque(maxlen=20)
        self.listener: Optional[RealtimeListener] = None

        self.moods: Collection[Mood] = Collection("moods", Mood)
        self.bucket_list: Collection[WishItem] = Collection("bucket_list", WishItem, newest_first=True)
        self.coupons: Collection[Coupon] = Collection("coupons", Coupon)
        self.milestones: Collection[Milestone] = Collection("milestones", Milestone)
        self.notes: Collection[Note] = Collection("notes", Note, newest_first=True)
        self.messages: Collection[Message] = Collection("messages", Message)
        self.folders: Collection[Folder] = Collection("folders", Folder)
        self.memories: Collection[Memory] = Collection("memories", Memory, newest_first=True)
        self._collections: Dict[str, Collection] = {
            c.name: c
            for c in (
                self.moods,
                self.bucket_list,
                self.coupons,
                self.milestones,
                self.notes,
                self.messages,
                self.folders,
                self.memories,
            )
        }

    # --- Reads -----------------------------------------------------------

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    def collection(self, name: str) -> Optional[Collection]:
        return self._collections.get(name)

    def view(self, name: str) -> List[Dict[str, Any]]:
        collection = self._collections.get(name)
        if collection is None:
            raise KeyError(name)
        return collection.dump()

    def drain_notices(self) -> List[Notice]:
        notices = list(self.notices)
        self.notices.clear()
        return notices

    def countdown(self) -> Countdown:
        raw = self.settings.get("countdown")
        try:
            return Countdown.model_validate(raw)
        except SchemaError:
            logger.info("store.countdown.default_used value=%r", raw)
            return Countdown.model_validate(DEFAULT_COUNTDOWN)

    def streak_count(self) -> int:
        streaks = self.settings.get("streaks") or {}
        try:
            return int(streaks.get("count", 0))
        except (AttributeError, TypeError, ValueError):
            return 0

    def last_mood(self) -> MoodCategory:
        items = self.moods.items
        return items[-1].mood if items else MoodCategory.NEUTRAL

    def today_mood(self, now: Optional[datetime] = None) -> Optional[Mood]:
        """Return the latest mood whose calendar day matches today in ``APP_TIMEZONE``."""

        tz = self._timezone()
        current = now or datetime.now(tz)
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        today = current.astimezone(tz).date()
        for mood in reversed(self.moods):
            created = mood.created_at
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            if created.astimezone(tz).date() == today:
                return mood
        return None

    # --- Session ---------------------------------------------------------

    async def login(self, email: str, password: str) -> Identity:
        """Sign in and load everything; rejected credentials raise ``AuthError``."""

        identity = await self._gateway.sign_in(email, password)
        await self._begin_session(identity)
        return identity

    async def signup(self, email: str, password: str) -> Optional[Identity]:
        return await self._gateway.sign_up(email, password)

    async def resume(self, access_token: str, refresh_token: str) -> Identity:
        """Restore a stored session.

        An expired access token is traded for a new session through the refresh
        token; without one it fails before any network call.
        """

        if self._access_token_live(access_token, refresh_token):
            identity = await self._gateway.set_session(access_token, refresh_token)
        else:
            identity = await self._gateway.refresh_session(refresh_token)
        await self._begin_session(identity)
        return identity

    async def restore_session(self) -> Optional[Identity]:
        identity = await self._gateway.get_session()
        if identity is None:
            return None
        if not self._access_token_live(identity.access_token, identity.refresh_token):
            identity = await self._gateway.refresh_session(identity.refresh_token)
        await self._begin_session(identity)
        return identity

    async def close(self) -> None:
        """Drop local state and realtime channels but keep the remote session.

        Used when an idle store is evicted; the browser can still resume from
        its stored tokens.
        """

        await self._end_local_session()

    async def logout(self) -> None:
        """Clear local state unconditionally, then sign out remotely."""

        await self._end_local_session()

        try:
            await self._gateway.sign_out()
        except (RemoteError, AuthError):
            logger.warning("store.logout.remote_failed", exc_info=True)

    async def refresh(self) -> None:
        """Reload every collection and the app settings from the backend."""

        await asyncio.gather(
            self._load(self.moods, self._gateway.fetch_moods),
            self._load(self.bucket_list, self._gateway.fetch_bucket_list, DEFAULT_WISH_ITEMS),
            self._load(self.coupons, self._gateway.fetch_coupons, DEFAULT_COUPONS),
            self._load(self.milestones, self._gateway.fetch_milestones, []),
            self._load(self.notes, self._gateway.fetch_notes),
            self._load(self.messages, self._gateway.fetch_messages),
            self._load(self.folders, self._gateway.fetch_folders),
            self.load_settings(),
        )

    # --- Moods -----------------------------------------------------------

    async def add_mood(self, category: Any, note: Optional[str] = None) -> bool:
        mood = self._coerce_mood(category)
        user_id = self.identity.user_id if self.identity else None
        temp = Mood(id=_temp_id(), mood=mood, note=note, user_id=user_id)

        return await self._optimistic(
            "add_mood",
            self.moods,
            apply=lambda: self.moods.add(temp),
            remote=lambda: self._gateway.insert_mood(mood, user_id=user_id, note=note),
            confirm=lambda record: self.moods.settle(temp.id, record),
            rollback=lambda: self.moods.remove(temp.id),
            failure="No se pudo guardar tu estado de ánimo",
        )

    # --- Wish list -------------------------------------------------------

    async def add_bucket_item(self, text: str, category: str = "Otro", description: Optional[str] = None) -> WishItem:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Escribe un deseo antes de guardarlo.")
        if category not in WISH_CATEGORIES:
            raise ValidationError(f"Categoría desconocida: {category}")
        return await self._create(
            "add_bucket_item",
            self.bucket_list,
            lambda: self._gateway.insert_bucket_item(text, category, (description or "").strip() or None),
            success="¡Deseo agregado! ✨",
        )

    async def toggle_bucket_item(self, item_id: str) -> bool:
        item = self.bucket_list.get(item_id)
        if item is None:
            logger.info("store.toggle_bucket_item.unknown id=%s", item_id)
            return False
        prior = item.completed

        return await self._optimistic(
            "toggle_bucket_item",
            self.bucket_list,
            apply=lambda: self.bucket_list.update(item_id, completed=not prior),
            remote=lambda: self._gateway.update_bucket_item(item_id, not prior),
            rollback=lambda: self.bucket_list.update(item_id, completed=prior),
            failure="Error al actualizar",
            success=None if prior else "¡Deseo cumplido! 🎉",
        )

    async def delete_bucket_item(self, item_id: str) -> bool:
        return await self._optimistic_delete(
            "delete_bucket_item", self.bucket_list, item_id, self._gateway.delete_bucket_item
        )

    # --- Coupons ---------------------------------------------------------

    async def add_coupon(self, title: str) -> Coupon:
        title = (title or "").strip()
        if not title:
            raise ValidationError("El cupón necesita un título.")
        return await self._create("add_coupon", self.coupons, lambda: self._gateway.insert_coupon(title))

    async def redeem_coupon(self, coupon_id: str) -> bool:
        coupon = self.coupons.get(coupon_id)
        if coupon is None:
            logger.info("store.redeem_coupon.unknown id=%s", coupon_id)
            return False
        if coupon.redeemed:
            return True
        prior = coupon.redeemed

        return await self._optimistic(
            "redeem_coupon",
            self.coupons,
            apply=lambda: self.coupons.update(coupon_id, redeemed=True),
            remote=lambda: self._gateway.redeem_coupon(coupon_id),
            rollback=lambda: self.coupons.update(coupon_id, redeemed=prior),
            failure="No se pudo canjear el cupón",
        )

    async def delete_coupon(self, coupon_id: str) -> bool:
        return await self._optimistic_delete("delete_coupon", self.coupons, coupon_id, self._gateway.delete_coupon)

    # --- Milestones ------------------------------------------------------

    async def add_milestone(self, data: Dict[str, Any]) -> Milestone:
        try:
            Milestone.model_validate({**data, "id": "pending"})
        except SchemaError as exc:
            fields = ", ".join(str(err["loc"][0]) for err in exc.errors() if err.get("loc"))
            raise ValidationError(f"Faltan datos del hito: {fields}") from exc
        return await self._create("add_milestone", self.milestones, lambda: self._gateway.insert_milestone(data))

    # --- Notes -----------------------------------------------------------

    async def add_note(self, content: str, color: str = "yellow") -> Note:
        content = (content or "").strip()
        if not content:
            raise ValidationError("La nota está vacía.")
        author = self.identity.display_name if self.identity else "user"
        note = await self._create("add_note", self.notes, lambda: self._gateway.insert_note(content, color, author))
        self._push_in_background(content[:PREVIEW_LENGTH], NOTE_PUSH_HEADING)
        return note

    async def delete_note(self, note_id: str) -> bool:
        return await self._optimistic_delete("delete_note", self.notes, note_id, self._gateway.delete_note)

    # --- Messages --------------------------------------------------------

    async def send_message(self, content: str) -> bool:
        content = (content or "").strip()
        if not content:
            raise ValidationError("El mensaje está vacío.")
        identity = self._require_identity()
        temp = Message(
            id=_temp_id(),
            content=content,
            sender_id=identity.user_id,
            created_at=datetime.now(timezone.utc),
            read=False,
        )

        sent = await self._optimistic(
            "send_message",
            self.messages,
            apply=lambda: self.messages.add(temp),
            remote=lambda: self._gateway.insert_message(content, identity.user_id),
            confirm=lambda record: self.messages.settle(temp.id, record),
            rollback=lambda: self.messages.remove(temp.id),
            failure="No se pudo enviar el mensaje",
        )
        if sent:
            self._push_in_background(message_preview(content))
        return sent

    async def mark_messages_read(self) -> bool:
        """Flag the partner's unread messages as read."""

        if self.identity is None:
            return True
        viewer = self.identity.user_id
        unread = [m.id for m in self.messages if m.sender_id != viewer and not m.read and not m.id.startswith(TEMP_PREFIX)]
        if not unread:
            return True

        def flag(value: bool) -> None:
            for message_id in unread:
                self.messages.update(message_id, read=value)

        return await self._optimistic(
            "mark_messages_read",
            self.messages,
            apply=lambda: flag(True),
            remote=lambda: self._gateway.mark_messages_read(unread),
            rollback=lambda: flag(False),
            failure=None,
        )

    # --- Settings --------------------------------------------------------

    async def load_settings(self) -> Dict[str, Any]:
        generation = self._generation
        try:
            data = await self._gateway.fetch_app_settings()
        except (RemoteError, AuthError):
            logger.warning("store.load_settings.failed", exc_info=True)
            data = {}
        if generation != self._generation:
            return self.settings

        merged = deepcopy(DEFAULT_SETTINGS)
        # Only override the defaults when the backend actually has something.
        if data:
            merged.update(data)
        self.settings = merged
        return self.settings

    async def update_setting(self, key: str, value: Any) -> bool:
        had_key = key in self.settings
        prior = deepcopy(self.settings.get(key))

        def rollback() -> None:
            if had_key:
                self.settings[key] = prior
            else:
                self.settings.pop(key, None)

        return await self._optimistic(
            "update_setting",
            None,
            apply=lambda: self.settings.__setitem__(key, value),
            remote=lambda: self._gateway.upsert_app_setting(key, value),
            rollback=rollback,
            failure="No se pudo guardar la configuración",
        )

    def toggle_theme(self) -> str:
        self.theme = "dark" if self.theme == "light" else "light"
        if self._cache is not None:
            self._cache.save("theme", self.theme)
        return self.theme

    # --- Gallery ---------------------------------------------------------

    async def load_folders(self, parent_id: Optional[str] = None) -> List[Folder]:
        await self._load(self.folders, lambda: self._gateway.fetch_folders(parent_id))
        return self.folders.items

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> Folder:
        name = (name or "").strip()
        if not name:
            raise ValidationError("La carpeta necesita un nombre.")
        return await self._create("create_folder", self.folders, lambda: self._gateway.create_folder(name, parent_id))

    async def rename_folder(self, folder_id: str, name: str) -> Folder:
        name = (name or "").strip()
        if not name:
            raise ValidationError("La carpeta necesita un nombre.")
        folder = await self._gateway.update_folder(folder_id, name)
        self.folders.replace(folder_id, folder)
        return folder

    async def delete_folder(self, folder_id: str) -> bool:
        return await self._optimistic_delete("delete_folder", self.folders, folder_id, self._gateway.delete_folder)

    async def load_memories(self, folder_id: Optional[str] = None) -> List[Memory]:
        await self._load(self.memories, lambda: self._gateway.fetch_memories(folder_id))
        return self.memories.items

    async def add_memory(
        self,
        upload: Optional[MediaUpload],
        title: str,
        description: str = "",
        when: Any = None,
        folder_id: Optional[str] = None,
        external_url: Optional[str] = None,
    ) -> Memory:
        title = (title or "").strip()
        if not title:
            raise ValidationError("El recuerdo necesita un título.")
        memory = await self._create(
            "add_memory",
            self.memories,
            lambda: self._gateway.upload_memory(upload, title, description, when, folder_id, external_url),
        )
        self.memories.sort(key=_memory_sort_key, reverse=True)
        return memory

    async def update_memory(self, memory_id: str, updates: Dict[str, Any]) -> Memory:
        memory = await self._gateway.update_memory(memory_id, updates)
        self.memories.replace(memory_id, memory)
        return memory

    async def delete_memory(self, memory_id: str) -> bool:
        return await self._optimistic_delete("delete_memory", self.memories, memory_id, self._gateway.delete_memory)

    # --- Realtime hook ---------------------------------------------------

    def collection_changed(self, collection: Collection) -> None:
        self._changed(collection)

    # --- Private helpers -------------------------------------------------

    async def _optimistic(
        self,
        action: str,
        collection: Optional[Collection],
        *,
        apply: Callable[[], Any],
        remote: Callable[[], Awaitable[Any]],
        rollback: Callable[[], Any],
        confirm: Optional[Callable[[Any], Any]] = None,
        failure: Optional[str] = None,
        success: Optional[str] = None,
    ) -> bool:
        generation = self._generation
        apply()
        self._changed(collection)

        try:
            result = await remote()
        except (RemoteError, AuthError) as exc:
            logger.warning("store.%s.rollback: %s", action, exc, exc_info=True)
            if generation == self._generation:
                rollback()
                self._changed(collection)
                if failure:
                    self._notice("error", failure)
            return False

        if generation != self._generation:
            logger.info("store.%s.discarded_after_logout", action)
            return True
        if confirm is not None:
            confirm(result)
            self._changed(collection)
        if success:
            self._notice("success", success)
        return True

    async def _optimistic_delete(
        self,
        action: str,
        collection: Collection,
        record_id: str,
        remote: Callable[[str], Awaitable[Any]],
    ) -> bool:
        if not collection.contains(record_id):
            logger.info("store.%s.unknown id=%s", action, record_id)
            return False
        snapshot = collection.snapshot()

        return await self._optimistic(
            action,
            collection,
            apply=lambda: collection.remove(record_id),
            remote=lambda: remote(record_id),
            rollback=lambda: collection.restore(snapshot),
            failure="No se pudo eliminar",
        )

    async def _create(
        self,
        action: str,
        collection: Collection,
        remote: Callable[[], Awaitable[R]],
        success: Optional[str] = None,
    ) -> R:
        generation = self._generation
        try:
            record = await remote()
        except (RemoteError, AuthError):
            logger.warning("store.%s.failed", action, exc_info=True)
            raise

        if generation == self._generation:
            collection.add(record)
            self._changed(collection)
            if success:
                self._notice("success", success)
        return record

    async def _load(
        self,
        collection: Collection,
        fetch: Callable[[], Awaitable[List[Record]]],
        seed: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        generation = self._generation
        try:
            items = await fetch()
        except (RemoteError, AuthError):
            logger.warning("store.refresh.%s_failed", collection.name, exc_info=True)
            if seed is None:
                return
            items = self._cached(collection, seed)

        if generation != self._generation:
            return
        collection.reset(items)
        self._changed(collection)

    def _cached(self, collection: Collection, seed: List[Dict[str, Any]]) -> List[Record]:
        rows = self._cache.load(self._cache_key(collection.name)) if self._cache else None
        if not isinstance(rows, list):
            rows = seed
        items: List[Record] = []
        for row in rows:
            try:
                items.append(collection.model.model_validate(row))
            except SchemaError:
                logger.warning("store.cache.invalid_row %s", collection.name)
        return items

    def _changed(self, collection: Optional[Collection]) -> None:
        if collection is None or self._cache is None:
            return
        if collection.name in FALLBACK_COLLECTIONS and self.identity is not None:
            self._cache.save(self._cache_key(collection.name), collection.dump())

    def _cache_key(self, name: str) -> str:
        if self.identity is not None:
            return f"{self.identity.user_id}_{name}"
        return name

    def _notice(self, level: str, message: str) -> None:
        self.notices.append(Notice(level, message))

    def _clear_local(self) -> None:
        self.identity = None
        for collection in self._collections.values():
            collection.reset([])
        self.settings = deepcopy(DEFAULT_SETTINGS)
        self.notices.clear()

    async def _end_local_session(self) -> None:
        self._generation += 1
        listener, self.listener = self.listener, None
        self._clear_local()
        if listener is not None:
            await listener.stop()

    async def _begin_session(self, identity: Identity) -> None:
        if self.identity is not None and self.identity.user_id != identity.user_id:
            await self._end_local_session()
        self.identity = identity
        await self._watch_auth()
        await self.refresh()
        if self._realtime_enabled:
            await self._start_listener()

    async def _start_listener(self) -> None:
        if self.listener is None:
            self.listener = RealtimeListener(self._gateway, self)
        try:
            await self.listener.start()
        except RemoteError:
            logger.warning("store.realtime.start_failed", exc_info=True)

    async def _watch_auth(self) -> None:
        if self._auth_subscription is not None:
            return
        try:
            self._auth_subscription = await self._gateway.watch_auth(self._on_auth_change)
        except (RemoteError, AuthError):
            logger.warning("store.watch_auth.failed", exc_info=True)

    def _on_auth_change(self, event: str, session: Any) -> None:
        if event == "SIGNED_OUT" and self.identity is not None:
            logger.info("store.auth.signed_out_remotely")
            self._generation += 1
            listener, self.listener = self.listener, None
            self._clear_local()
            if listener is not None:
                self._spawn(listener.stop())
        elif event == "TOKEN_REFRESHED" and self.identity is not None and session is not None:
            self.identity = self.identity.model_copy(
                update={
                    "access_token": getattr(session, "access_token", self.identity.access_token),
                    "refresh_token": getattr(session, "refresh_token", self.identity.refresh_token),
                }
            )

    def _push_in_background(self, message: str, heading: Optional[str] = None) -> None:
        push = self._config.push if self._config is not None else PushConfig()
        if not push.enabled:
            return
        if not push.target_known:
            logger.info("store.push.skipped: no partner player id configured")
            return
        self._spawn(self._send_push(message, heading, push.partner_player_id))

    async def _send_push(self, message: str, heading: Optional[str], player_id: Optional[str]) -> None:
        try:
            await self._gateway.invoke_push_relay(message, heading, player_id)
        except RemoteError:
            logger.warning("store.push.failed", exc_info=True)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    def _access_token_live(access_token: str, refresh_token: str) -> bool:
        """Whether ``access_token`` can be used as is.

        A stale or unreadable access token is only an error when there is no
        refresh token to fall back on.
        """

        try:
            ensure_session_fresh(access_token)
        except AuthError:
            if not refresh_token:
                raise
            logger.info("store.session.refreshing")
            return False
        return True

    def _require_identity(self) -> Identity:
        if self.identity is None:
            raise AuthError("Inicia sesión para continuar.")
        return self.identity

    def _timezone(self):
        name = self._config.timezone if self._config else "UTC"
        try:
            return ZoneInfo(name)
        except ZoneInfoNotFoundError:
            logger.warning("store.timezone.unknown %s; using UTC", name)
            return timezone.utc

    @staticmethod
    def _coerce_mood(category: Any) -> MoodCategory:
        try:
            return MoodCategory(category)
        except ValueError as exc:
            raise ValidationError(f"Estado de ánimo desconocido: {category!r}") from exc
