from __future__ import annotations

import asyncio
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import IsolatedAsyncioTestCase, skipUnless
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

sys.path.insert(0, str(Path(__file__).resolve().parent))

from fakes import FakeGateway, make_token  # noqa: E402

from prometida.config import NOTE_PUSH_HEADING, BackendConfig, Config, PushConfig  # noqa: E402
from prometida.errors import AuthError, RemoteError, ValidationError  # noqa: E402
from prometida.models import Coupon, Message, Mood, MoodCategory, Note, WishItem  # noqa: E402
from prometida.services.local_cache import LocalCache  # noqa: E402
from prometida.services.realtime import ChangeEvent, apply_change  # noqa: E402
from prometida.services.store import AppStore, message_preview  # noqa: E402


def _zone_available(name: str) -> bool:
    try:
        ZoneInfo(name)
    except ZoneInfoNotFoundError:
        return False
    return True


class StoreTestCase(IsolatedAsyncioTestCase):
    timezone_name = "UTC"

    async def asyncSetUp(self) -> None:
        self.tmpdir = TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.gateway = FakeGateway()
        self.cache = LocalCache(Path(self.tmpdir.name))
        self.config = Config(
            backend=BackendConfig(url=None, key=None),
            push=PushConfig(partner_player_id="player-2"),
            timezone=self.timezone_name,
        )
        self.seed()
        self.store = AppStore(self.gateway, self.cache, self.config, realtime=False)

    def seed(self) -> None:
        self.gateway.rows["bucket_list"] = [
            WishItem(id="1", text="Ver una aurora boreal", category="Aventura", completed=False),
            WishItem(id="2", text="Cocinar pasta casera juntos", category="Comida", completed=True),
        ]
        self.gateway.rows["coupons"] = [
            Coupon(id="c1", title="Masaje"),
            Coupon(id="c2", title="Película"),
            Coupon(id="c3", title="Cena", redeemed=True),
        ]
        self.gateway.rows["moods"] = [Mood(id="m1", mood=MoodCategory.HAPPY, user_id="user-1")]
        self.gateway.rows["notes"] = [Note(id="n1", content="Te amo", author="ana")]
        self.gateway.rows["messages"] = [
            Message(id="msg1", content="Hola", sender_id="user-2", read=False),
            Message(id="msg2", content="¿Cenamos?", sender_id="user-2", read=False),
            Message(id="msg3", content="Sí", sender_id="user-1", read=False),
        ]

    async def login(self) -> None:
        await self.store.login("ana@example.com", "secret")


class SessionTests(StoreTestCase):
    async def test_login_populates_identity_and_collections(self) -> None:
        identity = await self.store.login("ana@example.com", "secret")

        self.assertEqual("user-1", identity.user_id)
        self.assertTrue(self.store.is_authenticated)
        self.assertEqual(["1", "2"], self.store.bucket_list.ids())
        self.assertEqual(["c1", "c2", "c3"], self.store.coupons.ids())
        self.assertEqual(["msg1", "msg2", "msg3"], self.store.messages.ids())

    async def test_rejected_credentials_raise_auth_error(self) -> None:
        self.gateway.fail.add("sign_in")

        with self.assertRaises(AuthError) as ctx:
            await self.store.login("ana@example.com", "wrong")

        self.assertEqual("Invalid login credentials", ctx.exception.message)
        self.assertIsNone(self.store.identity)
        self.assertEqual([], self.store.bucket_list.ids())

    async def test_resume_with_expired_token_and_no_refresh_token_fails_without_network(self) -> None:
        expired = make_token(expires_in=timedelta(minutes=-5))

        with self.assertRaises(AuthError):
            await self.store.resume(expired, "")

        self.assertEqual([], self.gateway.calls)

    async def test_resume_with_expired_token_uses_refresh_token(self) -> None:
        expired = make_token(expires_in=timedelta(minutes=-5))

        identity = await self.store.resume(expired, "refresh-1")

        self.assertEqual([("refresh-1",)], self.gateway.called("refresh_session"))
        self.assertEqual([], self.gateway.called("set_session"))
        self.assertEqual("refresh-2", identity.refresh_token)
        self.assertEqual("refresh-2", self.store.identity.refresh_token)
        self.assertEqual(["1", "2"], self.store.bucket_list.ids())

    async def test_resume_fails_when_refresh_is_rejected(self) -> None:
        self.gateway.fail.add("refresh_session")
        expired = make_token(expires_in=timedelta(minutes=-5))

        with self.assertRaises(AuthError):
            await self.store.resume(expired, "revoked")

        self.assertIsNone(self.store.identity)

    async def test_close_keeps_remote_session(self) -> None:
        await self.login()

        await self.store.close()

        self.assertIsNone(self.store.identity)
        self.assertEqual([], self.store.notes.ids())
        self.assertEqual([], self.gateway.called("sign_out"))

    async def test_signup_does_not_sign_in(self) -> None:
        await self.store.signup("ana@example.com", "secret")

        self.assertEqual([("ana@example.com", "secret")], self.gateway.called("sign_up"))
        self.assertIsNone(self.store.identity)

    async def test_refreshed_token_event_updates_identity(self) -> None:
        await self.login()
        session = type("Session", (), {"access_token": "access-2", "refresh_token": "refresh-2"})()

        self.gateway.auth_callbacks[0]("TOKEN_REFRESHED", session)

        self.assertEqual("access-2", self.store.identity.access_token)
        self.assertEqual("refresh-2", self.store.identity.refresh_token)

    async def test_resume_with_fresh_token(self) -> None:
        identity = await self.store.resume(make_token(), "refresh-1")

        self.assertEqual("user-1", identity.user_id)
        self.assertEqual(1, len(self.gateway.called("set_session")))
        self.assertEqual(["1", "2"], self.store.bucket_list.ids())

    async def test_logout_clears_state_even_when_remote_sign_out_fails(self) -> None:
        await self.login()
        self.gateway.fail.add("sign_out")

        await self.store.logout()

        self.assertIsNone(self.store.identity)
        for name in ("moods", "bucket_list", "coupons", "notes", "messages"):
            self.assertEqual([], self.store.view(name), name)

    async def test_logout_during_in_flight_mood_add_leaves_no_moods(self) -> None:
        await self.login()
        hold = asyncio.Event()
        self.gateway.holds["insert_mood"] = hold

        task = asyncio.create_task(self.store.add_mood("happy"))
        await asyncio.sleep(0)
        await self.store.logout()
        hold.set()
        await task

        self.assertEqual([], self.store.moods.ids())
        self.assertIsNone(self.store.identity)

    async def test_remote_sign_out_event_clears_local_state(self) -> None:
        await self.login()
        callback = self.gateway.auth_callbacks[0]

        callback("SIGNED_OUT", None)

        self.assertIsNone(self.store.identity)
        self.assertEqual([], self.store.notes.ids())


class MoodTests(StoreTestCase):
    async def test_failed_mood_submission_leaves_ids_unchanged(self) -> None:
        await self.login()
        before = self.store.moods.ids()
        self.gateway.fail.add("insert_mood")

        result = await self.store.add_mood(MoodCategory.SAD)

        self.assertFalse(result)
        self.assertEqual(before, self.store.moods.ids())
        notices = self.store.drain_notices()
        self.assertEqual(["error"], [n.level for n in notices])

    async def test_mood_is_visible_before_remote_resolves(self) -> None:
        await self.login()
        hold = asyncio.Event()
        self.gateway.holds["insert_mood"] = hold

        task = asyncio.create_task(self.store.add_mood("excited"))
        await asyncio.sleep(0)

        pending = self.store.moods.items[-1]
        self.assertTrue(pending.id.startswith("temp-"))
        self.assertEqual(MoodCategory.EXCITED, pending.mood)

        hold.set()
        self.assertTrue(await task)

        confirmed = self.store.moods.items[-1]
        self.assertEqual("100", confirmed.id)
        self.assertEqual(2, len(self.store.moods))

    async def test_unknown_mood_is_rejected_locally(self) -> None:
        await self.login()

        with self.assertRaises(ValidationError):
            await self.store.add_mood("furious")

        self.assertEqual([], self.gateway.called("insert_mood"))

    async def test_today_mood_uses_calendar_day(self) -> None:
        await self.login()
        self.store.moods.reset(
            [
                Mood(id="a", mood=MoodCategory.TIRED, created_at=datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)),
                Mood(id="b", mood=MoodCategory.HAPPY, created_at=datetime(2025, 3, 2, 3, 0, tzinfo=timezone.utc)),
            ]
        )

        today = self.store.today_mood(now=datetime(2025, 3, 1, 22, 0, tzinfo=timezone.utc))

        self.assertEqual("a", today.id)
        self.assertIsNone(self.store.today_mood(now=datetime(2025, 3, 5, 12, 0, tzinfo=timezone.utc)))


@skipUnless(_zone_available("America/Mexico_City"), "tz database not installed")
class TimezoneMoodTests(StoreTestCase):
    timezone_name = "America/Mexico_City"

    async def test_today_mood_in_configured_timezone(self) -> None:
        await self.login()
        # 03:00 UTC on the 2nd is still the evening of the 1st in Mexico City.
        self.store.moods.reset(
            [Mood(id="late", mood=MoodCategory.HAPPY, created_at=datetime(2025, 3, 2, 3, 0, tzinfo=timezone.utc))]
        )
        local_now = datetime(2025, 3, 1, 22, 0, tzinfo=ZoneInfo("America/Mexico_City"))

        self.assertEqual("late", self.store.today_mood(now=local_now).id)


class WishListTests(StoreTestCase):
    async def test_failed_toggle_restores_prior_flag(self) -> None:
        await self.login()
        self.gateway.fail.add("update_bucket_item")

        result = await self.store.toggle_bucket_item("1")

        self.assertFalse(result)
        self.assertFalse(self.store.bucket_list.get("1").completed)

    async def test_toggle_is_applied_before_remote_resolves(self) -> None:
        await self.login()
        hold = asyncio.Event()
        self.gateway.holds["update_bucket_item"] = hold

        task = asyncio.create_task(self.store.toggle_bucket_item("1"))
        await asyncio.sleep(0)
        self.assertTrue(self.store.bucket_list.get("1").completed)

        hold.set()
        self.assertTrue(await task)
        self.assertTrue(self.store.bucket_list.get("1").completed)
        self.assertEqual([("1", True)], self.gateway.called("update_bucket_item"))

    async def test_toggle_unknown_item_is_ignored(self) -> None:
        await self.login()

        self.assertFalse(await self.store.toggle_bucket_item("missing"))
        self.assertEqual([], self.gateway.called("update_bucket_item"))

    async def test_add_bucket_item_prepends_on_success(self) -> None:
        await self.login()

        item = await self.store.add_bucket_item("  Saltar en paracaídas ", "Aventura")

        self.assertEqual("Saltar en paracaídas", item.text)
        self.assertEqual([item.id, "1", "2"], self.store.bucket_list.ids())

    async def test_failed_create_raises_and_leaves_collection_untouched(self) -> None:
        await self.login()
        self.gateway.fail.add("insert_bucket_item")

        with self.assertRaises(RemoteError):
            await self.store.add_bucket_item("Ir a Japón", "Viajes")

        self.assertEqual(["1", "2"], self.store.bucket_list.ids())

    async def test_add_bucket_item_rejects_unknown_category(self) -> None:
        await self.login()

        with self.assertRaises(ValidationError):
            await self.store.add_bucket_item("Algo", "Deportes")

    async def test_failed_delete_restores_full_order(self) -> None:
        await self.login()
        self.gateway.fail.add("delete_bucket_item")

        await self.store.delete_bucket_item("1")

        self.assertEqual(["1", "2"], self.store.bucket_list.ids())

    async def test_changes_are_mirrored_to_local_cache(self) -> None:
        await self.login()

        await self.store.toggle_bucket_item("1")

        cached = self.cache.load("user-1_bucket_list")
        self.assertTrue(cached[0]["completed"])

    async def test_fetch_failure_falls_back_to_cache(self) -> None:
        self.cache.save("user-1_bucket_list", [{"id": "9", "text": "Cached wish", "category": "Otro"}])
        self.gateway.fail.add("fetch_bucket_list")

        await self.login()

        self.assertEqual(["9"], self.store.bucket_list.ids())

    async def test_fetch_failure_without_cache_uses_seed_items(self) -> None:
        self.gateway.fail.update({"fetch_bucket_list", "fetch_coupons"})

        await self.login()

        self.assertEqual(["1", "2"], self.store.bucket_list.ids())
        self.assertEqual(["1", "2", "3"], self.store.coupons.ids())


class CouponTests(StoreTestCase):
    async def test_failed_redeem_restores_flag(self) -> None:
        await self.login()
        self.gateway.fail.add("redeem_coupon")

        await self.store.redeem_coupon("c1")

        self.assertFalse(self.store.coupons.get("c1").redeemed)

    async def test_redeeming_redeemed_coupon_is_noop(self) -> None:
        await self.login()

        self.assertTrue(await self.store.redeem_coupon("c3"))
        self.assertEqual([], self.gateway.called("redeem_coupon"))

    async def test_failed_delete_restores_middle_entry_in_place(self) -> None:
        await self.login()
        self.gateway.fail.add("delete_coupon")

        result = await self.store.delete_coupon("c2")

        self.assertFalse(result)
        self.assertEqual(["c1", "c2", "c3"], self.store.coupons.ids())

    async def test_successful_delete_removes_entry(self) -> None:
        await self.login()

        self.assertTrue(await self.store.delete_coupon("c2"))
        self.assertEqual(["c1", "c3"], self.store.coupons.ids())


class MilestoneTests(StoreTestCase):
    async def test_missing_fields_raise_before_remote_call(self) -> None:
        await self.login()

        with self.assertRaises(ValidationError):
            await self.store.add_milestone({"title": "Primera cita"})

        self.assertEqual([], self.gateway.called("insert_milestone"))

    async def test_add_milestone_appends(self) -> None:
        await self.login()

        milestone = await self.store.add_milestone({"title": "Primera cita", "date": date(2022, 12, 21)})

        self.assertEqual([milestone.id], self.store.milestones.ids())


class NoteTests(StoreTestCase):
    async def test_add_note_prepends_and_notifies_partner(self) -> None:
        await self.login()

        note = await self.store.add_note("Nos vemos a las 8", "rose")
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        self.assertEqual([note.id, "n1"], self.store.notes.ids())
        self.assertEqual("ana", note.author)
        self.assertEqual(
            [{"message": "Nos vemos a las 8", "heading": NOTE_PUSH_HEADING, "player_id": "player-2"}],
            self.gateway.pushes,
        )

    async def test_note_echo_before_confirmation_is_not_duplicated(self) -> None:
        await self.login()
        hold = asyncio.Event()
        self.gateway.holds["insert_note"] = hold

        task = asyncio.create_task(self.store.add_note("Hola"))
        await asyncio.sleep(0)
        apply_change(self.store, ChangeEvent("notes", "INSERT", {"id": "100", "content": "Hola"}))
        hold.set()
        await task

        self.assertEqual(["100", "n1"], self.store.notes.ids())

    async def test_failed_note_delete_restores_snapshot(self) -> None:
        await self.login()
        self.gateway.fail.add("delete_note")

        await self.store.delete_note("n1")

        self.assertEqual(["n1"], self.store.notes.ids())

    async def test_deleting_unknown_note_skips_remote(self) -> None:
        await self.login()

        self.assertFalse(await self.store.delete_note("ghost"))
        self.assertEqual([], self.gateway.called("delete_note"))


class MessageTests(StoreTestCase):
    async def test_optimistic_message_and_echo_collapse_to_one_entry(self) -> None:
        await self.login()
        hold = asyncio.Event()
        self.gateway.holds["insert_message"] = hold

        task = asyncio.create_task(self.store.send_message("¿Pizza hoy?"))
        await asyncio.sleep(0)
        apply_change(
            self.store,
            ChangeEvent("messages", "INSERT", {"id": "100", "content": "¿Pizza hoy?", "sender_id": "user-1"}),
        )
        hold.set()
        self.assertTrue(await task)

        contents = [m.content for m in self.store.messages]
        self.assertEqual(1, contents.count("¿Pizza hoy?"))
        self.assertEqual("100", self.store.messages.ids()[-1])
        self.assertFalse(any(i.startswith("temp-") for i in self.store.messages.ids()))

    async def test_failed_send_drops_temp_entry(self) -> None:
        await self.login()
        self.gateway.fail.add("insert_message")

        self.assertFalse(await self.store.send_message("Hola"))
        self.assertEqual(["msg1", "msg2", "msg3"], self.store.messages.ids())
        self.assertEqual([], self.gateway.pushes)

    async def test_long_message_push_preview_is_truncated(self) -> None:
        await self.login()
        content = "a" * 80

        await self.store.send_message(content)
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        self.assertEqual(message_preview(content), self.gateway.pushes[0]["message"])
        self.assertEqual("💬 " + "a" * 50 + "...", message_preview(content))
        self.assertEqual("💬 corto", message_preview("corto"))

    async def test_push_targets_partner_device(self) -> None:
        await self.login()

        await self.store.send_message("Hola")
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        self.assertEqual("player-2", self.gateway.pushes[0]["player_id"])

    async def test_push_is_skipped_without_partner_device(self) -> None:
        self.config.push = PushConfig()
        await self.login()

        with self.assertLogs("prometida.services.store", level="INFO") as logs:
            self.assertTrue(await self.store.send_message("Hola"))
        await asyncio.sleep(0)

        self.assertEqual([], self.gateway.pushes)
        self.assertTrue(any("store.push.skipped" in line for line in logs.output))

    async def test_broadcast_relay_needs_no_player_id(self) -> None:
        self.config.push = PushConfig(broadcast=True)
        await self.login()

        await self.store.send_message("Hola")
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        self.assertEqual([{"message": "💬 Hola", "heading": None, "player_id": None}], self.gateway.pushes)

    async def test_mark_read_flags_only_partner_messages(self) -> None:
        await self.login()

        await self.store.mark_messages_read()

        flags = {m.id: m.read for m in self.store.messages}
        self.assertEqual({"msg1": True, "msg2": True, "msg3": False}, flags)
        self.assertEqual([(["msg1", "msg2"],)], self.gateway.called("mark_messages_read"))

    async def test_failed_mark_read_restores_flags(self) -> None:
        await self.login()
        self.gateway.fail.add("mark_messages_read")

        await self.store.mark_messages_read()

        self.assertFalse(any(m.read for m in self.store.messages))

    async def test_send_message_requires_login(self) -> None:
        with self.assertRaises(AuthError) as ctx:
            await self.store.send_message("Hola")

        self.assertEqual("Inicia sesión para continuar.", ctx.exception.message)


class SettingsTests(StoreTestCase):
    async def test_empty_settings_fall_back_to_default_countdown(self) -> None:
        await self.login()

        countdown = self.store.countdown()

        self.assertEqual("Nuestro aniversario", countdown.title)
        self.assertEqual(datetime(2026, 12, 21, tzinfo=timezone.utc), countdown.date)

    async def test_malformed_countdown_falls_back_to_default(self) -> None:
        self.gateway.settings = {"countdown": {"title": "Boda"}}
        await self.login()

        self.assertEqual("Nuestro aniversario", self.store.countdown().title)

    async def test_stored_settings_override_defaults(self) -> None:
        self.gateway.settings = {
            "countdown": {"date": "2027-06-01T18:00:00+00:00", "title": "Boda"},
            "streaks": {"count": 12},
        }
        await self.login()

        self.assertEqual("Boda", self.store.countdown().title)
        self.assertEqual(12, self.store.streak_count())
        self.assertIn("music", self.store.settings)

    async def test_failed_update_restores_prior_value(self) -> None:
        await self.login()
        self.gateway.fail.add("upsert_app_setting")

        await self.store.update_setting("streaks", {"count": 5})

        self.assertEqual({"count": 0}, self.store.settings["streaks"])

    async def test_theme_toggle_is_persisted(self) -> None:
        self.assertEqual("dark", self.store.toggle_theme())

        reopened = AppStore(FakeGateway(), self.cache, self.config, realtime=False)

        self.assertEqual("dark", reopened.theme)


class GalleryTests(StoreTestCase):
    async def test_add_memory_with_external_link(self) -> None:
        await self.login()

        memory = await self.store.add_memory(
            None, "Nuestro viaje", when=datetime(2024, 5, 1, tzinfo=timezone.utc), external_url="https://youtu.be/x"
        )

        self.assertEqual("video", memory.media_type.value)
        self.assertEqual("https://youtu.be/x", memory.display_url)
        self.assertEqual([memory.id], self.store.memories.ids())

    async def test_memories_stay_sorted_newest_first(self) -> None:
        await self.login()

        older = await self.store.add_memory(
            None, "Antes", when=datetime(2023, 1, 1, tzinfo=timezone.utc), external_url="https://a"
        )
        newer = await self.store.add_memory(
            None, "Después", when=datetime(2024, 1, 1, tzinfo=timezone.utc), external_url="https://b"
        )
        oldest = await self.store.add_memory(
            None, "Primero", when=datetime(2022, 1, 1, tzinfo=timezone.utc), external_url="https://c"
        )

        self.assertEqual([newer.id, older.id, oldest.id], self.store.memories.ids())

    async def test_folder_delete_failure_restores_folder(self) -> None:
        await self.login()
        folder = await self.store.create_folder("Viajes")
        self.gateway.fail.add("delete_folder")

        await self.store.delete_folder(folder.id)

        self.assertEqual([folder.id], self.store.folders.ids())

    async def test_memory_without_title_is_rejected(self) -> None:
        await self.login()

        with self.assertRaises(ValidationError):
            await self.store.add_memory(None, "   ", external_url="https://a")

    async def test_rename_folder_and_update_memory_replace_in_place(self) -> None:
        await self.login()
        folder = await self.store.create_folder("Viajes")
        memory = await self.store.add_memory(None, "Antes", external_url="https://a")

        renamed = await self.store.rename_folder(folder.id, "Viajes 2025")
        updated = await self.store.update_memory(memory.id, {"title": "Después"})

        self.assertEqual("Viajes 2025", self.store.folders.get(folder.id).name)
        self.assertEqual(renamed, self.store.folders.get(folder.id))
        self.assertEqual("Después", self.store.memories.get(memory.id).title)
        self.assertEqual(updated, self.store.memories.get(memory.id))


class RestoreSessionTests(StoreTestCase):
    async def test_restore_session_from_client_storage(self) -> None:
        identity = await self.store.restore_session()

        self.assertEqual("user-1", identity.user_id)
        self.assertEqual(["1", "2"], self.store.bucket_list.ids())
