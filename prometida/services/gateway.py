"""Async wrappers around the Supabase client.

The gateway owns no domain state. Every call either returns validated data or
raises ``RemoteError`` (``AuthError`` for auth calls) carrying the backend's
error text; deciding whether to roll back, log or propagate is the caller's job.
"""

from __future__ import annotations

import inspect
import logging
import mimetypes
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, TypeVar, Union
from uuid import uuid4

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError
from supabase import AsyncClient, acreate_client

from ..config import Config
from ..errors import AuthError, RemoteError, ValidationError
from ..models import (
    Coupon,
    Folder,
    Identity,
    MediaType,
    Memory,
    Message,
    Milestone,
    Mood,
    MoodCategory,
    Note,
    WishItem,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

TABLE_MOODS = "moods"
TABLE_BUCKET_LIST = "bucket_list"
TABLE_COUPONS = "coupons"
TABLE_MILESTONES = "milestones"
TABLE_NOTES = "notes"
TABLE_MESSAGES = "messages"
TABLE_SETTINGS = "app_settings"
TABLE_FOLDERS = "folders"
TABLE_MEMORIES = "memories"

MESSAGE_HISTORY_LIMIT = 100


@dataclass
class MediaUpload:
    """A local file picked for the gallery."""

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: Union[str, Path], content_type: Optional[str] = None) -> "MediaUpload":
        path = Path(path)
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(
            filename=path.name,
            content=path.read_bytes(),
            content_type=content_type or guessed or "application/octet-stream",
        )

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        _, dot, ext = self.filename.rpartition(".")
        return ext.lower() if dot else ""

    @property
    def media_type(self) -> MediaType:
        if self.content_type.startswith("video/"):
            return MediaType.VIDEO
        return MediaType.IMAGE


class RemoteGateway:
    """Typed request/response wrappers for auth, tables, storage and functions."""

    def __init__(self, config: Config, client: Optional[AsyncClient] = None) -> None:
        self._config = config
        self._supabase: Optional[AsyncClient] = client

    # --- Auth ------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> Identity:
        client = await self._client()
        try:
            response = await client.auth.sign_in_with_password({"email": email, "password": password})
        except Exception as exc:
            raise AuthError(str(exc) or "Credenciales incorrectas.") from exc

        identity = self._identity_from(response)
        if identity is None:
            raise AuthError("Credenciales incorrectas.")
        return identity

    async def sign_up(self, email: str, password: str) -> Optional[Identity]:
        client = await self._client()
        try:
            response = await client.auth.sign_up({"email": email, "password": password})
        except Exception as exc:
            raise AuthError(str(exc) or "No se pudo crear la cuenta.") from exc
        if not getattr(response, "user", None):
            raise AuthError("No se pudo crear la cuenta.")
        # Email confirmation may hold the session back; that's not an error.
        return self._identity_from(response)

    async def sign_out(self) -> None:
        client = await self._client()
        try:
            await client.auth.sign_out()
        except Exception as exc:
            raise RemoteError(f"Sign out failed: {exc}") from exc

    async def get_session(self) -> Optional[Identity]:
        client = await self._client()
        try:
            session = await client.auth.get_session()
        except Exception as exc:
            raise AuthError(str(exc) or "No se pudo leer la sesión actual.") from exc
        if session is None:
            return None
        return self._identity_from(session)

    async def set_session(self, access_token: str, refresh_token: str) -> Identity:
        client = await self._client()
        try:
            response = await client.auth.set_session(access_token, refresh_token)
        except Exception as exc:
            raise AuthError(str(exc) or "Tu sesión ha caducado. Vuelve a iniciar sesión.") from exc
        identity = self._identity_from(response)
        if identity is None:
            raise AuthError("Tu sesión ha caducado. Vuelve a iniciar sesión.")
        return identity

    async def refresh_session(self, refresh_token: str) -> Identity:
        """Trade a refresh token for a new session once the access token has expired."""

        client = await self._client()
        try:
            response = await client.auth.refresh_session(refresh_token)
        except Exception as exc:
            raise AuthError(str(exc) or "Tu sesión ha caducado. Vuelve a iniciar sesión.") from exc
        identity = self._identity_from(response)
        if identity is None:
            raise AuthError("Tu sesión ha caducado. Vuelve a iniciar sesión.")
        return identity

    async def watch_auth(self, callback: Callable[[str, Any], None]) -> Any:
        """Register ``callback(event, session)`` for auth state changes."""

        client = await self._client()
        return client.auth.on_auth_state_change(callback)

    # --- Moods -----------------------------------------------------------

    async def fetch_moods(self) -> List[Mood]:
        client = await self._client()
        query = client.table(TABLE_MOODS).select("*").order("created_at", desc=False)
        return self._parse_rows(Mood, await self._execute(query, "Loading moods"), TABLE_MOODS)

    async def insert_mood(self, category: MoodCategory, user_id: Optional[str] = None, note: Optional[str] = None) -> Mood:
        client = await self._client()
        row: Dict[str, Any] = {"mood": category.value}
        if user_id:
            row["user_id"] = user_id
        if note:
            row["note"] = note
        rows = await self._execute(client.table(TABLE_MOODS).insert(row), "Saving mood")
        return self._single(Mood, rows, "Saving mood")

    # --- Wish list -------------------------------------------------------

    async def fetch_bucket_list(self) -> List[WishItem]:
        client = await self._client()
        query = client.table(TABLE_BUCKET_LIST).select("*").order("created_at", desc=True)
        return self._parse_rows(WishItem, await self._execute(query, "Loading wish list"), TABLE_BUCKET_LIST)

    async def insert_bucket_item(self, text: str, category: str = "Otro", description: Optional[str] = None) -> WishItem:
        client = await self._client()
        row = {"text": text, "category": category, "description": description or None, "completed": False}
        rows = await self._execute(client.table(TABLE_BUCKET_LIST).insert(row), "Saving wish")
        return self._single(WishItem, rows, "Saving wish")

    async def update_bucket_item(self, item_id: str, completed: bool) -> None:
        client = await self._client()
        query = client.table(TABLE_BUCKET_LIST).update({"completed": completed}).eq("id", item_id)
        await self._execute(query, "Updating wish")

    async def delete_bucket_item(self, item_id: str) -> None:
        client = await self._client()
        await self._execute(client.table(TABLE_BUCKET_LIST).delete().eq("id", item_id), "Deleting wish")

    # --- Coupons ---------------------------------------------------------

    async def fetch_coupons(self) -> List[Coupon]:
        client = await self._client()
        query = client.table(TABLE_COUPONS).select("*").order("created_at", desc=False)
        return self._parse_rows(Coupon, await self._execute(query, "Loading coupons"), TABLE_COUPONS)

    async def insert_coupon(self, title: str) -> Coupon:
        client = await self._client()
        rows = await self._execute(client.table(TABLE_COUPONS).insert({"title": title, "redeemed": False}), "Saving coupon")
        return self._single(Coupon, rows, "Saving coupon")

    async def redeem_coupon(self, coupon_id: str) -> None:
        client = await self._client()
        query = client.table(TABLE_COUPONS).update({"redeemed": True}).eq("id", coupon_id)
        await self._execute(query, "Redeeming coupon")

    async def delete_coupon(self, coupon_id: str) -> None:
        client = await self._client()
        await self._execute(client.table(TABLE_COUPONS).delete().eq("id", coupon_id), "Deleting coupon")

    # --- Milestones ------------------------------------------------------

    async def fetch_milestones(self) -> List[Milestone]:
        client = await self._client()
        query = client.table(TABLE_MILESTONES).select("*").order("date", desc=False)
        return self._parse_rows(Milestone, await self._execute(query, "Loading milestones"), TABLE_MILESTONES)

    async def insert_milestone(self, data: Dict[str, Any]) -> Milestone:
        client = await self._client()
        row = {key: value for key, value in data.items() if key != "id"}
        if isinstance(row.get("date"), date):
            row["date"] = row["date"].isoformat()
        rows = await self._execute(client.table(TABLE_MILESTONES).insert(row), "Saving milestone")
        return self._single(Milestone, rows, "Saving milestone")

    # --- Notes -----------------------------------------------------------

    async def fetch_notes(self) -> List[Note]:
        client = await self._client()
        query = client.table(TABLE_NOTES).select("*").order("created_at", desc=True)
        return self._parse_rows(Note, await self._execute(query, "Loading notes"), TABLE_NOTES)

    async def insert_note(self, content: str, color: str = "yellow", author: str = "user") -> Note:
        client = await self._client()
        row = {"content": content, "color": color, "author": author}
        rows = await self._execute(client.table(TABLE_NOTES).insert(row), "Saving note")
        return self._single(Note, rows, "Saving note")

    async def delete_note(self, note_id: str) -> None:
        client = await self._client()
        await self._execute(client.table(TABLE_NOTES).delete().eq("id", note_id), "Deleting note")

    # --- Messages --------------------------------------------------------

    async def fetch_messages(self, limit: int = MESSAGE_HISTORY_LIMIT) -> List[Message]:
        client = await self._client()
        query = client.table(TABLE_MESSAGES).select("*").order("created_at", desc=False).limit(limit)
        return self._parse_rows(Message, await self._execute(query, "Loading messages"), TABLE_MESSAGES)

    async def insert_message(self, content: str, sender_id: str) -> Message:
        client = await self._client()
        row = {"content": content, "sender_id": sender_id, "read": False}
        rows = await self._execute(client.table(TABLE_MESSAGES).insert(row), "Sending message")
        return self._single(Message, rows, "Sending message")

    async def mark_messages_read(self, message_ids: Iterable[str]) -> None:
        ids = list(message_ids)
        if not ids:
            return
        client = await self._client()
        query = client.table(TABLE_MESSAGES).update({"read": True}).in_("id", ids)
        await self._execute(query, "Marking messages as read")

    # --- App settings ----------------------------------------------------

    async def fetch_app_settings(self) -> Dict[str, Any]:
        client = await self._client()
        rows = await self._execute(client.table(TABLE_SETTINGS).select("*"), "Loading settings")
        settings: Dict[str, Any] = {}
        for row in rows:
            if isinstance(row, dict) and row.get("key"):
                settings[row["key"]] = row.get("value")
        return settings

    async def upsert_app_setting(self, key: str, value: Any) -> None:
        client = await self._client()
        await self._execute(client.table(TABLE_SETTINGS).upsert({"key": key, "value": value}), "Saving setting")

    # --- Folders ---------------------------------------------------------

    async def fetch_folders(self, parent_id: Optional[str] = None) -> List[Folder]:
        client = await self._client()
        query = client.table(TABLE_FOLDERS).select("*").order("created_at", desc=False)
        if parent_id:
            query = query.eq("parent_id", parent_id)
        else:
            query = query.is_("parent_id", "null")
        return self._parse_rows(Folder, await self._execute(query, "Loading folders"), TABLE_FOLDERS)

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> Folder:
        client = await self._client()
        rows = await self._execute(
            client.table(TABLE_FOLDERS).insert({"name": name, "parent_id": parent_id}), "Creating folder"
        )
        return self._single(Folder, rows, "Creating folder")

    async def update_folder(self, folder_id: str, name: str) -> Folder:
        client = await self._client()
        rows = await self._execute(
            client.table(TABLE_FOLDERS).update({"name": name}).eq("id", folder_id), "Renaming folder"
        )
        return self._single(Folder, rows, "Renaming folder")

    async def delete_folder(self, folder_id: str) -> None:
        client = await self._client()
        await self._execute(client.table(TABLE_FOLDERS).delete().eq("id", folder_id), "Deleting folder")

    # --- Memories --------------------------------------------------------

    async def fetch_memories(self, folder_id: Optional[str] = None) -> List[Memory]:
        client = await self._client()
        query = client.table(TABLE_MEMORIES).select("*").order("date", desc=True)
        if folder_id:
            query = query.eq("folder_id", folder_id)
        return self._parse_rows(Memory, await self._execute(query, "Loading memories"), TABLE_MEMORIES)

    async def upload_media(self, upload: MediaUpload) -> str:
        """Upload a file to object storage and return its public URL.

        Oversized files are rejected before the client is even created.
        """

        limit = self._config.max_upload_bytes
        if upload.size > limit:
            raise ValidationError(
                f"El archivo es demasiado grande. El límite es {limit // (1024 * 1024)}MB."
            )

        client = await self._client()
        path = f"{uuid4().hex}.{upload.extension}" if upload.extension else uuid4().hex
        bucket = client.storage.from_(self._config.backend.storage_bucket)
        try:
            await bucket.upload(path, upload.content, {"content-type": upload.content_type})
            public_url = bucket.get_public_url(path)
            if inspect.isawaitable(public_url):
                public_url = await public_url
        except Exception as exc:
            raise RemoteError(f"Uploading {upload.filename} failed: {exc}") from exc
        return str(public_url).rstrip("?")

    async def upload_memory(
        self,
        upload: Optional[MediaUpload],
        title: str,
        description: str = "",
        when: Union[str, date, datetime, None] = None,
        folder_id: Optional[str] = None,
        external_url: Optional[str] = None,
    ) -> Memory:
        """Store a new gallery memory from an uploaded file or an external video link."""

        timestamp = self._iso_timestamp(when)
        if external_url:
            media_url = ""
            media_type = MediaType.VIDEO
        elif upload is not None:
            media_url = await self.upload_media(upload)
            media_type = upload.media_type
        else:
            raise ValidationError("Debes proporcionar un archivo o un enlace externo.")

        client = await self._client()
        row = {
            "title": title,
            "description": description,
            "date": timestamp,
            "media_url": media_url,
            "external_url": external_url or None,
            "media_type": media_type.value,
            "folder_id": folder_id or None,
        }
        rows = await self._execute(client.table(TABLE_MEMORIES).insert(row), "Saving memory")
        return self._single(Memory, rows, "Saving memory")

    async def update_memory(self, memory_id: str, updates: Dict[str, Any]) -> Memory:
        allowed = {key: value for key, value in updates.items() if key in {"title", "description", "date"}}
        if "date" in allowed:
            allowed["date"] = self._iso_timestamp(allowed["date"])
        client = await self._client()
        rows = await self._execute(
            client.table(TABLE_MEMORIES).update(allowed).eq("id", memory_id), "Updating memory"
        )
        return self._single(Memory, rows, "Updating memory")

    async def delete_memory(self, memory_id: str) -> None:
        client = await self._client()
        await self._execute(client.table(TABLE_MEMORIES).delete().eq("id", memory_id), "Deleting memory")

    # --- Push relay ------------------------------------------------------

    async def invoke_push_relay(
        self, message: str, heading: Optional[str] = None, player_id: Optional[str] = None
    ) -> Any:
        body: Dict[str, Any] = {"message": message, "heading": heading or self._config.push.default_heading}
        if player_id:
            body["player_id"] = player_id
        client = await self._client()
        try:
            return await client.functions.invoke(
                self._config.push.function_name, invoke_options={"body": body}
            )
        except Exception as exc:
            raise RemoteError(f"Push relay failed: {exc}") from exc

    # --- Realtime --------------------------------------------------------

    async def channel(self, name: str) -> Any:
        client = await self._client()
        return client.channel(name)

    async def remove_channel(self, channel: Any) -> None:
        client = await self._client()
        try:
            await client.remove_channel(channel)
        except Exception as exc:
            raise RemoteError(f"Closing realtime channel failed: {exc}") from exc

    # --- Private helpers -------------------------------------------------

    async def _client(self) -> AsyncClient:
        if self._supabase is not None:
            return self._supabase
        backend = self._config.backend
        if not backend.is_valid:
            raise RemoteError("Supabase is not configured (set SUPABASE_URL and SUPABASE_ANON_KEY).", 503)
        try:
            self._supabase = await acreate_client(backend.url, backend.key)
        except Exception as exc:
            raise RemoteError(f"Supabase init failed: {exc}", 503) from exc
        logger.info("Supabase client initialised for %s", backend.url)
        return self._supabase

    @staticmethod
    async def _execute(query: Any, action: str) -> List[Dict[str, Any]]:
        try:
            response = await query.execute()
        except Exception as exc:
            raise RemoteError(f"{action} failed: {exc}") from exc

        error = getattr(response, "error", None)
        if error is None and isinstance(response, dict):
            error = response.get("error")
        if error:
            raise RemoteError(f"{action} failed: {error}")

        data = getattr(response, "data", None)
        if data is None and isinstance(response, dict):
            data = response.get("data")
        if isinstance(data, dict):
            return [data]
        return [row for row in (data or []) if isinstance(row, dict)]

    @staticmethod
    def _parse_rows(model: Type[M], rows: List[Dict[str, Any]], table: str) -> List[M]:
        parsed: List[M] = []
        for row in rows:
            try:
                parsed.append(model.model_validate(row))
            except SchemaError:
                logger.warning("gateway.%s.invalid_row id=%s", table, row.get("id"), exc_info=True)
        return parsed

    @staticmethod
    def _single(model: Type[M], rows: List[Dict[str, Any]], action: str) -> M:
        if not rows:
            raise RemoteError(f"{action} failed: the backend returned no record.")
        try:
            return model.model_validate(rows[0])
        except SchemaError as exc:
            raise RemoteError(f"{action} failed: unexpected record from the backend.") from exc

    @staticmethod
    def _identity_from(response: Any) -> Optional[Identity]:
        session = getattr(response, "session", None) or response
        user = getattr(session, "user", None) or getattr(response, "user", None)
        access_token = getattr(session, "access_token", None)
        if user is None or not access_token:
            return None

        expires_at = getattr(session, "expires_at", None)
        return Identity(
            user_id=str(user.id),
            email=getattr(user, "email", None),
            access_token=access_token,
            refresh_token=getattr(session, "refresh_token", "") or "",
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc) if expires_at else None,
        )

    @staticmethod
    def _iso_timestamp(value: Union[str, date, datetime, None]) -> str:
        if value is None:
            return datetime.now(timezone.utc).isoformat()
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.isoformat()
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day, tzinfo=timezone.utc).isoformat()
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValidationError(f"Fecha no válida: {value!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.isoformat()
