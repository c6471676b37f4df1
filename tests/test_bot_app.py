import asyncio
import os
import sys
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import clipbot.bot_app as bot_app
from clipbot.clip_queue import ChannelRegistry, ClipHistory, ClipRef
from clipbot.permissions import ChatterTags


class SettingsFromEnvTests(unittest.TestCase):
    def test_complete_environment(self) -> None:
        settings = bot_app.settings_from_env(
            {
                "BOT_ACCESS_TOKEN": "oauth:abc",
                "BOT_REFRESH_TOKEN": "refresh",
                "BOT_LOGIN": "clipbot",
                "TWITCH_CLIENT_ID": "cid",
                "TWITCH_CLIENT_SECRET": "secret",
                "BOT_USER_ID": "555",
            }
        )
        self.assertIsNone(settings.error)
        self.assertEqual(settings.token, "abc")
        self.assertEqual(settings.bot_user_id, "555")

    def test_missing_values_are_reported(self) -> None:
        settings = bot_app.settings_from_env({"BOT_LOGIN": "clipbot", "TWITCH_CLIENT_ID": "cid"})
        self.assertEqual(
            settings.error,
            "Missing bot credentials: access_token, refresh_token, client_secret, bot_user_id",
        )


class LoaderTests(unittest.TestCase):
    def test_load_commands_merges_aliases(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "commands.yml"
            path.write_text("prefix: '?'\nshoutout: hype\nstop: [halt, end]\n", encoding="utf-8")
            commands_map = bot_app.load_commands(str(path))
        self.assertEqual(commands_map["prefix"], ["?"])
        self.assertEqual(commands_map["shoutout"], ["hype"])
        self.assertEqual(commands_map["stop"], ["halt", "end"])
        self.assertEqual(commands_map["watch"], ["watch"])

    def test_missing_files_fall_back_to_defaults(self) -> None:
        commands_map = bot_app.load_commands("/nonexistent/commands.yml")
        self.assertEqual(commands_map["shoutout"], ["so", "shoutout"])
        messages = bot_app.load_messages(Path("/nonexistent/messages.yml"))
        self.assertEqual(messages, bot_app.DEFAULT_MESSAGES)

    def test_load_messages_overrides_template(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "messages.yml"
            path.write_text("clip_created: 'Fresh clip! {url}'\n", encoding="utf-8")
            messages = bot_app.load_messages(path)
        self.assertEqual(messages["clip_created"], "Fresh clip! {url}")


class BackendClientTests(unittest.IsolatedAsyncioTestCase):
    async def test_missing_clip_token_is_none(self) -> None:
        client = bot_app.Backend("http://backend", "secret")
        client._req = AsyncMock(side_effect=bot_app.BackendError(404, "no broadcaster token"))
        self.assertIsNone(await client.get_clip_token("chan"))

    async def test_other_clip_token_errors_propagate(self) -> None:
        client = bot_app.Backend("http://backend", "secret")
        client._req = AsyncMock(side_effect=bot_app.BackendError(401, "invalid admin token"))
        with self.assertRaises(bot_app.BackendError):
            await client.get_clip_token("chan")

    async def test_clip_token_returned(self) -> None:
        client = bot_app.Backend("http://backend/", "secret")
        client._req = AsyncMock(return_value={"access_token": "tok"})
        self.assertEqual(await client.get_clip_token("chan"), "tok")
        client._req.assert_awaited_once_with("GET", "/channels/chan/clip_token")
        self.assertEqual(client.bot_stream_url("chan"), "http://backend/channels/chan/bot/stream")

    async def test_overlay_notifier_publishes_events(self) -> None:
        client = MagicMock()
        client.publish_overlay_event = AsyncMock()
        notifier = bot_app.BackendOverlayNotifier(client)

        await notifier.play_clip("chan", ClipRef("abc", "https://clips.twitch.tv/abc", 20.0))
        await notifier.close_overlay("chan")
        await notifier.play_ban_sound("chan")

        client.publish_overlay_event.assert_any_await(
            "chan", "playClip", {"id": "abc", "url": "https://clips.twitch.tv/abc", "duration": 20.0}
        )
        client.publish_overlay_event.assert_any_await("chan", "closeOverlay")
        client.publish_overlay_event.assert_any_await("chan", "playBanSound")

    @unittest.skipIf("CLIP_HISTORY_LIMIT" in os.environ, "history limit overridden by environment")
    async def test_default_history_keeps_every_played_id(self) -> None:
        self.assertEqual(bot_app.CLIP_HISTORY_LIMIT, 0)
        history = ClipHistory(bot_app.CLIP_HISTORY_LIMIT)
        for n in range(500):
            history.add(f"clip-{n}")
        self.assertIsNone(history.limit)
        self.assertEqual(len(history), 500)
        self.assertIn("clip-0", history)


class ClipBotTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._original_backend = bot_app.backend
        self.backend = AsyncMock()
        bot_app.backend = self.backend

        bot = bot_app.ClipBot.__new__(bot_app.ClipBot)
        bot.bot_user_id = "999"
        bot.channel_map = {
            "chan": {"channel_name": "chan", "channel_id": "900", "allowed_commands": {}},
        }
        bot.listeners = {}
        bot._sync_lock = asyncio.Lock()
        bot._subscription_ids = {}
        bot.messages = dict(bot_app.DEFAULT_MESSAGES)
        bot.clip_queue = MagicMock()
        bot.clip_queue.handle_message = AsyncMock()
        bot.clip_queue.clip_finished = AsyncMock()
        bot.clip_queue.overlay_connected = AsyncMock()
        bot.clip_queue.registry = ChannelRegistry()
        bot.overlay = MagicMock()
        bot.overlay.play_ban_sound = AsyncMock()
        self.bot = bot

    async def asyncTearDown(self) -> None:
        bot_app.backend = self._original_backend

    def _message(self, text: str, chatter_id: str = "1", **flags) -> SimpleNamespace:
        return SimpleNamespace(
            chatter=SimpleNamespace(id=chatter_id, **flags),
            broadcaster=SimpleNamespace(name="Chan"),
            text=text,
        )

    async def test_event_message_routes_to_queue(self) -> None:
        await self.bot.event_message(self._message("!so friend", moderator=True))

        self.bot.clip_queue.handle_message.assert_awaited_once_with(
            "chan", ChatterTags(moderator=True), "!so friend"
        )

    async def test_own_messages_are_ignored(self) -> None:
        await self.bot.event_message(self._message("Clip created: x", chatter_id="999"))
        self.bot.clip_queue.handle_message.assert_not_awaited()

    async def test_backend_events_drive_playback(self) -> None:
        await self.bot.handle_backend_event("chan", '{"type": "clipFinished", "payload": null}')
        await self.bot.handle_backend_event("chan", '{"type": "overlayConnected", "payload": null}')
        await self.bot.handle_backend_event("chan", "init")

        self.bot.clip_queue.clip_finished.assert_awaited_once_with("chan")
        self.bot.clip_queue.overlay_connected.assert_awaited_once_with("chan")

    async def test_config_event_updates_allowed_commands(self) -> None:
        allowed = {"so": {"enabled": True, "roles": ["vip"]}}
        await self.bot.handle_backend_event(
            "chan", '{"type": "config", "payload": {"allowed_commands": {"so": {"enabled": true, "roles": ["vip"]}}}}'
        )
        self.assertEqual(self.bot.allowed_commands("#Chan"), allowed)
        self.assertIsNone(self.bot.allowed_commands("other"))

    async def test_announce_clip_uses_template(self) -> None:
        self.bot._send_message = AsyncMock()
        self.bot.messages["clip_created"] = "New clip: {url}"

        await self.bot.announce_clip("chan", "https://clips.twitch.tv/x")

        self.bot._send_message.assert_awaited_once_with(
            "chan",
            "New clip: https://clips.twitch.tv/x",
            metadata={"command": "clip", "url": "https://clips.twitch.tv/x"},
        )

    async def test_sync_channels_joins_and_parts(self) -> None:
        self.bot.channel_map = {}
        self.bot._subscribe_for_channel = AsyncMock()
        self.bot._unsubscribe_channel = AsyncMock()
        self.bot.listen_backend = AsyncMock()
        self.backend.get_channels.return_value = [
            {"channel_name": "Alpha", "channel_id": "1", "allowed_commands": {}},
        ]

        await self.bot.sync_channels()

        self.assertIn("alpha", self.bot.channel_map)
        self.assertIn("alpha", self.bot.listeners)
        self.bot._subscribe_for_channel.assert_awaited_once_with("1")

        self.bot.clip_queue.registry.get("alpha")
        self.backend.get_channels.return_value = []
        await self.bot.sync_channels()

        self.assertEqual(self.bot.channel_map, {})
        self.assertNotIn("alpha", self.bot.clip_queue.registry)
        self.bot._unsubscribe_channel.assert_awaited_once_with("1")

    async def test_ban_plays_sound_on_channel_overlay(self) -> None:
        payload = SimpleNamespace(
            broadcaster=SimpleNamespace(id="900", name="Chan"),
            user=SimpleNamespace(id="5", name="spammer"),
        )

        await self.bot.event_ban(payload)

        self.bot.overlay.play_ban_sound.assert_awaited_once_with("chan")

    async def test_ban_in_unmonitored_channel_is_ignored(self) -> None:
        payload = SimpleNamespace(
            broadcaster=SimpleNamespace(id="123", name="elsewhere"),
            user=SimpleNamespace(id="5", name="spammer"),
        )

        await self.bot.event_ban(payload)

        self.bot.overlay.play_ban_sound.assert_not_awaited()

    async def test_ban_subscription_failure_keeps_chat(self) -> None:
        self.bot.subscribe_websocket = AsyncMock(
            side_effect=[{"data": [{"id": "chat-sub"}]}, RuntimeError("missing moderator scope")]
        )

        await self.bot._subscribe_for_channel("900")

        self.assertEqual(self.bot._subscription_ids["900"], ["chat-sub"])
        self.assertEqual(self.bot.subscribe_websocket.await_count, 2)
        self.backend.push_bot_log.assert_awaited()

    async def test_unsubscribe_removes_chat_and_ban_subscriptions(self) -> None:
        self.bot.subscribe_websocket = AsyncMock(
            side_effect=[{"data": [{"id": "chat-sub"}]}, {"data": [{"id": "ban-sub"}]}]
        )
        self.bot.delete_websocket_subscription = AsyncMock()

        await self.bot._subscribe_for_channel("900")
        await self.bot._unsubscribe_channel("900")

        deleted = [c.args[0] for c in self.bot.delete_websocket_subscription.await_args_list]
        self.assertEqual(deleted, ["chat-sub", "ban-sub"])
        self.assertNotIn("900", self.bot._subscription_ids)

    async def test_failed_subscription_skips_channel(self) -> None:
        self.bot.channel_map = {}
        self.bot._subscribe_for_channel = AsyncMock(side_effect=RuntimeError("Channel missing broadcaster id"))
        self.backend.get_channels.return_value = [{"channel_name": "beta", "channel_id": None}]

        await self.bot.sync_channels()

        self.assertEqual(self.bot.channel_map, {})
        self.assertEqual(self.bot.listeners, {})
        self.backend.push_bot_log.assert_awaited()


if __name__ == "__main__":
    unittest.main()
