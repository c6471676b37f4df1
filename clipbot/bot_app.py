from __future__ import annotations
import os, asyncio, json, logging, yaml
from typing import Optional, Dict, List, Mapping
from dataclasses import dataclass
from pathlib import Path

import aiohttp
from twitchio import eventsub
from twitchio.ext import commands
from twitchio.payloads import TokenRefreshedPayload

from clipbot.clip_queue import DEFAULT_COMMANDS, ClipRef, CommandDispatcher
from clipbot.clip_service import ClipService
from clipbot.permissions import ChatterTags

# ---- Env ----
# Full URL of the backend API, defaulting to the docker-compose service name.
BACKEND_URL = os.getenv('BACKEND_URL', 'http://api:7070')
# Token used for privileged requests to the backend.
ADMIN_TOKEN = os.getenv('ADMIN_TOKEN', 'change-me')
MESSAGES_PATH = Path(os.getenv('BOT_MESSAGES_PATH', '/bot/messages.yml'))
COMMANDS_FILE = os.getenv('COMMANDS_FILE', '/bot/commands.yml')
# Optional cap on each played-clip history set; 0 keeps every id until the
# pool of the selected user is exhausted.
CLIP_HISTORY_LIMIT = int(os.getenv('CLIP_HISTORY_LIMIT', '0'))
CHANNEL_SYNC_INTERVAL = int(os.getenv('CHANNEL_SYNC_INTERVAL', '30'))
HELIX_TIMEOUT = float(os.getenv('HELIX_TIMEOUT', '10'))

DEFAULT_MESSAGES = {
    'clip_created': 'Clip created: {url}',
}

LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}

logger = logging.getLogger(__name__)


# ---- Backend client ----
class BackendError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


class Backend:
    def __init__(self, base_url: str, admin_token: str):
        self.base = base_url.rstrip('/')
        self.headers = { 'X-Admin-Token': admin_token, 'Content-Type': 'application/json' }
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _req(self, method: str, path: str, payload: Optional[dict] = None):
        if not self.session:
            await self.start()
        url = f"{self.base}{path}"
        async with self.session.request(method, url, headers=self.headers, data=json.dumps(payload) if payload else None) as r:
            content_type = r.headers.get('content-type', '')
            is_json = content_type.startswith('application/json')
            if r.status >= 400:
                detail: object = ''
                if is_json:
                    try:
                        data = await r.json()
                    except Exception:
                        data = None
                    if isinstance(data, dict) and 'detail' in data:
                        detail = data['detail']
                    else:
                        detail = data or ''
                if not detail:
                    try:
                        detail = await r.text()
                    except Exception:
                        detail = ''
                if isinstance(detail, list):
                    detail = ', '.join(str(item) for item in detail)
                raise BackendError(r.status, detail or f"{method} {path} failed")
            if is_json:
                return await r.json()
            return await r.text()

    async def get_channels(self) -> List[dict]:
        return await self._req('GET', "/channels")

    async def get_clip_token(self, channel: str) -> Optional[str]:
        try:
            data = await self._req('GET', f"/channels/{channel}/clip_token")
        except BackendError as exc:
            if exc.status == 404:
                return None
            raise
        if isinstance(data, dict):
            return data.get('access_token') or None
        return None

    async def publish_overlay_event(self, channel: str, event_type: str, payload: Optional[dict] = None):
        return await self._req('POST', f"/channels/{channel}/overlay", {
            'type': event_type,
            'payload': payload,
        })

    def bot_stream_url(self, channel: str) -> str:
        return f"{self.base}/channels/{channel}/bot/stream"

    async def push_bot_log(
        self,
        *,
        level: str = 'info',
        message: str,
        metadata: Optional[Dict[str, object]] = None,
    ) -> Dict[str, object]:
        payload = {
            'level': level,
            'message': message,
            'metadata': metadata or {},
            'source': 'bot',
        }
        return await self._req('POST', "/bot/logs", payload)


backend = Backend(BACKEND_URL, ADMIN_TOKEN)


@dataclass
class BotSettings:
    token: Optional[str]
    refresh_token: Optional[str]
    login: Optional[str]
    client_id: Optional[str]
    client_secret: Optional[str]
    bot_user_id: Optional[str]
    error: Optional[str] = None


def _format_token(token: str) -> str:
    return token.removeprefix('oauth:') if token else token


def settings_from_env(env: Mapping[str, str] = os.environ) -> BotSettings:
    values = {
        'access_token': env.get('BOT_ACCESS_TOKEN'),
        'refresh_token': env.get('BOT_REFRESH_TOKEN'),
        'login': env.get('BOT_LOGIN'),
        'client_id': env.get('TWITCH_CLIENT_ID'),
        'client_secret': env.get('TWITCH_CLIENT_SECRET'),
        'bot_user_id': env.get('BOT_USER_ID') or env.get('TWITCH_BOT_USER_ID'),
    }
    missing = [name for name, value in values.items() if not value]
    return BotSettings(
        token=_format_token(values['access_token']),
        refresh_token=values['refresh_token'],
        login=values['login'],
        client_id=values['client_id'],
        client_secret=values['client_secret'],
        bot_user_id=values['bot_user_id'],
        error='Missing bot credentials: ' + ', '.join(missing) if missing else None,
    )


async def push_console_event(
    level: str,
    message: str,
    *,
    event: Optional[str] = None,
    metadata: Optional[Dict[str, object]] = None,
):
    meta = dict(metadata or {})
    if event:
        meta.setdefault('event', event)
    logger.log(LOG_LEVELS.get(level, logging.INFO), message)
    try:
        await backend.push_bot_log(level=level, message=message, metadata=meta)
    except Exception:
        # console streaming is best-effort
        pass

# ---- helpers ----
def load_commands(path: str) -> Dict[str, List[str]]:
    cfg: Dict[str, object] = dict(DEFAULT_COMMANDS)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return {k: [str(a) for a in v] if isinstance(v, list) else [str(v)] for k, v in cfg.items()}


def load_messages(path: Path) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return cfg


class BackendOverlayNotifier:
    """Delivers overlay events through the backend's per-channel websocket group."""

    def __init__(self, backend_client: Backend):
        self.backend = backend_client

    async def play_clip(self, channel: str, clip: ClipRef) -> None:
        await self.backend.publish_overlay_event(channel, 'playClip', clip.to_payload())

    async def close_overlay(self, channel: str) -> None:
        await self.backend.publish_overlay_event(channel, 'closeOverlay')

    async def play_ban_sound(self, channel: str) -> None:
        await self.backend.publish_overlay_event(channel, 'playBanSound')


# ---- bot ----
class ClipBot(commands.Bot):
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        bot_id: str,
        token: str,
        refresh_token: str,
        login: str,
        clip_service: Optional[ClipService] = None,
        sync_interval: int = CHANNEL_SYNC_INTERVAL,
    ):
        if not token or not refresh_token or not login or not bot_id:
            raise RuntimeError('token, refresh_token, login, and bot_id are required')
        self.commands_map = load_commands(COMMANDS_FILE)
        self.messages = load_messages(MESSAGES_PATH)
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            bot_id=str(bot_id),
            prefix=self.commands_map['prefix'][0],
            fetch_client_user=False,
        )
        self.channel_map: Dict[str, Dict] = {}
        self.listeners: Dict[str, asyncio.Task] = {}
        self._sync_lock = asyncio.Lock()
        self.sync_interval = sync_interval
        self.bot_user_id = str(bot_id)
        self._user_token = token
        self._refresh_token = refresh_token
        self._subscription_ids: Dict[str, List[str]] = {}
        self._refresher_task: Optional[asyncio.Task] = None
        self.clip_service = clip_service or ClipService(client_id, client_secret, timeout=HELIX_TIMEOUT)
        self.overlay = BackendOverlayNotifier(backend)
        self.clip_queue = CommandDispatcher(
            self.clip_service,
            self.overlay,
            config_lookup=self.allowed_commands,
            token_lookup=self.fetch_clip_token,
            announce_clip=self.announce_clip,
            commands_map=self.commands_map,
            history_limit=CLIP_HISTORY_LIMIT,
        )

    async def load_tokens(self, path: Optional[str] = None) -> None:
        if not self._user_token or not self._refresh_token:
            raise RuntimeError('Bot credentials are unavailable')
        await super().add_token(self._user_token, self._refresh_token)

    async def save_tokens(self, path: Optional[str] = None) -> None:
        # Tokens come from the environment, so skip file writes.
        return None

    async def event_token_refreshed(self, payload: TokenRefreshedPayload) -> None:
        self._user_token = payload.token
        self._refresh_token = payload.refresh_token
        await push_console_event('info', 'Bot token refreshed', event='token')

    async def event_ready(self) -> None:
        await self.sync_channels()
        self._ensure_refresher_running()

    def _ensure_refresher_running(self) -> None:
        task = self._refresher_task
        if task and not task.done():
            return
        self._refresher_task = asyncio.create_task(self.channel_refresher())

    async def _cancel_refresher(self) -> None:
        task = self._refresher_task
        if not task:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._refresher_task = None

    async def channel_refresher(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sync_interval)
                try:
                    await self.sync_channels()
                except Exception as exc:
                    await push_console_event(
                        'error',
                        f'Channel sync failed: {exc}',
                        event='sync',
                    )
        finally:
            self._refresher_task = None

    def _channel_login(self, name: str) -> str:
        return name.lstrip('#').lower()

    def allowed_commands(self, login: str) -> Optional[Mapping[str, object]]:
        row = self.channel_map.get(self._channel_login(login))
        return row.get('allowed_commands') if row else None

    async def sync_channels(self) -> None:
        async with self._sync_lock:
            rows = await backend.get_channels()
            wanted: Dict[str, Dict] = {}
            for row in rows:
                wanted[self._channel_login(row['channel_name'])] = row
            current_keys = set(self.channel_map.keys())
            wanted_keys = set(wanted.keys())

            for key in current_keys - wanted_keys:
                row = self.channel_map.pop(key)
                task = self.listeners.pop(key, None)
                if task:
                    task.cancel()
                await self._unsubscribe_channel(str(row.get('channel_id') or ''))
                self.clip_queue.registry.drop(key)
                await push_console_event(
                    'info',
                    f'Parted channel {key}',
                    event='part',
                    metadata={'channel': key},
                )

            for key in wanted_keys & current_keys:
                self.channel_map[key] = wanted[key]

            for key in wanted_keys - current_keys:
                row = wanted[key]
                try:
                    await self._subscribe_for_channel(str(row.get('channel_id') or ''))
                except Exception as exc:
                    await push_console_event(
                        'error',
                        f'Failed to subscribe channel {key}: {exc}',
                        event='join_error',
                        metadata={'channel': key, 'error': str(exc)},
                    )
                    continue
                self.channel_map[key] = row
                self.listeners[key] = asyncio.create_task(self.listen_backend(key))
                await push_console_event(
                    'info',
                    f'Subscribed channel {key}',
                    event='join',
                    metadata={'channel': key},
                )

    def _extract_subscription_id(self, response: object) -> Optional[str]:
        if not response:
            return None
        if isinstance(response, dict):
            data = response.get('data')
            if isinstance(data, list) and data and isinstance(data[0], dict):
                sub_id = data[0].get('id')
                return str(sub_id) if sub_id else None
        subscription = getattr(response, 'subscription', None)
        sub_id = getattr(subscription, 'id', None) or getattr(response, 'id', None)
        return str(sub_id) if sub_id else None

    async def _subscribe_for_channel(self, broadcaster_id: str) -> None:
        if not broadcaster_id:
            raise RuntimeError('Channel missing broadcaster id')
        if broadcaster_id in self._subscription_ids:
            return
        payload = eventsub.ChatMessageSubscription(
            broadcaster_user_id=broadcaster_id,
            user_id=self.bot_user_id,
        )
        response = await self.subscribe_websocket(payload=payload, as_bot=True)
        sub_id = self._extract_subscription_id(response)
        if not sub_id:
            raise RuntimeError('Subscription id unavailable')
        sub_ids = [sub_id]
        self._subscription_ids[broadcaster_id] = sub_ids
        # Ban notifications need the bot to moderate the channel; chat works without them.
        try:
            response = await self.subscribe_websocket(
                payload=eventsub.ChannelBanSubscription(broadcaster_user_id=broadcaster_id),
                as_bot=True,
            )
        except Exception as exc:
            await push_console_event(
                'warning',
                f'Ban events unavailable for {broadcaster_id}: {exc}',
                event='join',
                metadata={'channel_id': broadcaster_id},
            )
            return
        ban_sub_id = self._extract_subscription_id(response)
        if ban_sub_id:
            sub_ids.append(ban_sub_id)

    async def _unsubscribe_channel(self, broadcaster_id: str) -> None:
        for sub_id in self._subscription_ids.pop(broadcaster_id, None) or []:
            try:
                await self.delete_websocket_subscription(sub_id, force=True)
            except Exception as exc:
                await push_console_event(
                    'warning',
                    f'Failed to delete subscription {sub_id}: {exc}',
                    event='part',
                )

    async def _disable_all_channels(self) -> None:
        listener_tasks = list(self.listeners.values())
        for task in listener_tasks:
            task.cancel()
        if listener_tasks:
            await asyncio.gather(*listener_tasks, return_exceptions=True)
        self.listeners.clear()
        for key, row in list(self.channel_map.items()):
            await self._unsubscribe_channel(str(row.get('channel_id') or ''))
            self.clip_queue.registry.drop(key)
        self.channel_map.clear()

    async def shutdown(self) -> None:
        await self._cancel_refresher()
        await self._disable_all_channels()
        await super().close()
        await self.clip_service.close()
        await backend.close()

    async def _send_message(
        self,
        channel_login: str,
        message: str,
        *,
        metadata: Optional[Dict[str, object]] = None,
    ) -> None:
        info = self.channel_map.get(self._channel_login(channel_login))
        if not info or not info.get('channel_id'):
            return
        try:
            partial = self.create_partialuser(info.get('channel_id'), info.get('channel_name'))
            await partial.send_message(
                message,
                sender=self.bot_user_id,
                token_for=self.bot_user_id,
            )
            await push_console_event(
                'info',
                f'Sent message to {channel_login}',
                event='message',
                metadata={**(metadata or {}), 'sent_text': message, 'channel': channel_login},
            )
        except Exception as exc:
            await push_console_event(
                'error',
                f'Failed to send message to {channel_login}: {exc}',
                event='message',
                metadata={**(metadata or {}), 'channel': channel_login, 'error': str(exc)},
            )

    async def announce_clip(self, login: str, url: str) -> None:
        template = self.messages.get('clip_created') or DEFAULT_MESSAGES['clip_created']
        await self._send_message(login, template.format(url=url), metadata={'command': 'clip', 'url': url})

    async def fetch_clip_token(self, login: str) -> Optional[str]:
        return await backend.get_clip_token(login)

    async def event_message(self, message) -> None:
        if getattr(message.chatter, 'id', None) == self.bot_user_id:
            return
        login = self._channel_login(message.broadcaster.name)
        await self.clip_queue.handle_message(
            login,
            ChatterTags.from_chatter(message.chatter),
            message.text or '',
        )

    def _login_for_broadcaster(self, broadcaster) -> Optional[str]:
        broadcaster_id = str(getattr(broadcaster, 'id', '') or '')
        for key, row in self.channel_map.items():
            if broadcaster_id and str(row.get('channel_id') or '') == broadcaster_id:
                return key
        name = getattr(broadcaster, 'name', None)
        key = self._channel_login(name) if name else None
        return key if key in self.channel_map else None

    async def event_ban(self, payload) -> None:
        login = self._login_for_broadcaster(payload.broadcaster)
        if not login:
            return
        banned = getattr(payload.user, 'name', None)
        try:
            await self.overlay.play_ban_sound(login)
        except Exception as exc:
            await push_console_event(
                'error',
                f'Failed to send ban sound to {login}: {exc}',
                event='ban',
                metadata={'channel': login, 'user': banned, 'error': str(exc)},
            )
            return
        await push_console_event(
            'info',
            f'{banned} banned in {login}',
            event='ban',
            metadata={'channel': login, 'user': banned},
        )

    async def listen_backend(self, login: str) -> None:
        url = backend.bot_stream_url(login)
        while True:
            try:
                if backend.session is None:
                    await backend.start()
                async with backend.session.get(
                    url,
                    headers=backend.headers,
                    timeout=aiohttp.ClientTimeout(total=None),
                ) as resp:
                    if resp.status >= 400:
                        raise BackendError(resp.status, f'bot stream for {login} returned {resp.status}')
                    async for line in resp.content:
                        line = line.decode().strip()
                        if line.startswith('data:'):
                            await self.handle_backend_event(login, line[len('data:'):].strip())
            except asyncio.CancelledError:
                break
            except Exception as exc:
                await push_console_event(
                    'error',
                    f'Bot stream error for {login}: {exc}',
                    event='backend',
                    metadata={'channel': login},
                )
                await asyncio.sleep(5)

    async def handle_backend_event(self, login: str, raw: str) -> None:
        try:
            event = json.loads(raw)
        except ValueError:
            return
        if not isinstance(event, dict):
            return
        etype = event.get('type')
        if etype == 'clipFinished':
            await self.clip_queue.clip_finished(login)
        elif etype == 'overlayConnected':
            await self.clip_queue.overlay_connected(login)
        elif etype == 'config':
            row = self.channel_map.get(login)
            payload = event.get('payload') or {}
            if row is not None:
                row['allowed_commands'] = payload.get('allowed_commands') or {}


# ---- entry ----
async def main():
    settings = settings_from_env()
    if settings.error:
        await push_console_event(
            'error',
            f'Bot credentials are unavailable; not starting ({settings.error})',
            event='startup',
            metadata={'error': settings.error},
        )
        await backend.close()
        return
    await backend.start()
    bot = ClipBot(
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        bot_id=settings.bot_user_id,
        token=settings.token,
        refresh_token=settings.refresh_token,
        login=settings.login,
    )
    await push_console_event('info', f'Connecting bot as {settings.login}', event='lifecycle')
    try:
        await bot.start()
    finally:
        await bot.shutdown()

if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    asyncio.run(main())
