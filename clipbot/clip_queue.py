"""Per-channel clip queue and playback state.

Chat commands arrive through :meth:`CommandDispatcher.handle_message`, overlay
acknowledgements through :meth:`CommandDispatcher.clip_finished` and
:meth:`CommandDispatcher.overlay_connected`. Every entry point takes the
channel's lock, so the effects of two commands on one channel apply in the
order they were received even when their Twitch lookups resolve out of order.
"""
from __future__ import annotations
import asyncio
import logging
import random
import re
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence
from urllib.parse import urlparse

from clipbot.permissions import ChatterTags, is_allowed

logger = logging.getLogger(__name__)

# First match wins when aliases overlap.
COMMAND_ORDER = ('watch', 'replay', 'repeat', 'stoprepeat', 'stop', 'shoutout', 'clip')

# allowed_commands entry that governs each command.
CONFIG_KEYS = {
    'watch': 'watch',
    'replay': 'replay',
    'repeat': 'repeat',
    'stoprepeat': 'repeat',
    'stop': 'stop',
    'shoutout': 'so',
    'clip': 'clip',
}

DEFAULT_ALLOWED_COMMANDS: Dict[str, Dict[str, object]] = {
    'watch': {'enabled': False, 'roles': ['broadcaster']},
    'replay': {'enabled': False, 'roles': ['broadcaster']},
    'repeat': {'enabled': False, 'roles': ['broadcaster']},
    'so': {'enabled': False, 'roles': ['broadcaster']},
    'stop': {'enabled': False, 'roles': ['broadcaster']},
    'clip': {'enabled': False, 'roles': ['moderator']},
}

DEFAULT_COMMANDS: Dict[str, List[str]] = {
    'prefix': ['!'],
    'watch': ['watch'],
    'replay': ['replay'],
    'repeat': ['repeat'],
    'stoprepeat': ['stoprepeat'],
    'stop': ['stop'],
    'shoutout': ['so', 'shoutout'],
    'clip': ['clip'],
}

NO_ARGUMENT_COMMANDS = {'replay', 'stoprepeat', 'stop'}
USERNAME_COMMANDS = {'repeat', 'shoutout'}

CLIP_URL_TEMPLATE = 'https://clips.twitch.tv/{id}'

USERNAME_RE = re.compile(r'^@?(\w+)')


@dataclass(frozen=True)
class ClipRef:
    id: str
    url: str
    duration: float

    @classmethod
    def from_api(cls, data: Mapping[str, object], clip_id: Optional[str] = None) -> 'ClipRef':
        return cls(
            id=str(clip_id or data.get('id') or ''),
            url=str(data.get('url') or ''),
            duration=float(data.get('duration') or 0),
        )

    def to_payload(self) -> Dict[str, object]:
        return {'id': self.id, 'url': self.url, 'duration': self.duration}


class ClipHistory:
    """Insertion-ordered set of clip ids, optionally capped at ``limit``."""

    def __init__(self, limit: Optional[int] = None):
        self.limit = limit if limit and limit > 0 else None
        self._ids: 'OrderedDict[str, None]' = OrderedDict()

    def add(self, clip_id: str) -> None:
        self._ids.pop(clip_id, None)
        self._ids[clip_id] = None
        if self.limit:
            while len(self._ids) > self.limit:
                self._ids.popitem(last=False)

    def clear(self) -> None:
        self._ids.clear()

    def ids(self) -> List[str]:
        return list(self._ids)

    def __contains__(self, clip_id: object) -> bool:
        return clip_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)


class PlaybackState(str, Enum):
    IDLE = 'idle'
    PLAYING = 'playing'
    QUEUED = 'queued'


@dataclass
class ChannelState:
    name: str
    history_limit: Optional[int] = None
    queue: Deque[ClipRef] = field(default_factory=deque)
    is_playing: bool = False
    last_clip: Optional[ClipRef] = None
    repeat_target: Optional[str] = None
    played_shoutout_ids: ClipHistory = field(init=False)
    played_repeat_ids: ClipHistory = field(init=False)
    # Bumped whenever playback is interrupted; selections started under an
    # older generation are discarded.
    generation: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.played_shoutout_ids = ClipHistory(self.history_limit)
        self.played_repeat_ids = ClipHistory(self.history_limit)

    @property
    def state(self) -> PlaybackState:
        if not self.is_playing:
            return PlaybackState.IDLE
        return PlaybackState.QUEUED if self.queue else PlaybackState.PLAYING

    def interrupt(self) -> None:
        # last_clip survives so !replay keeps working after !stop
        self.queue.clear()
        self.repeat_target = None
        self.generation += 1


class ChannelRegistry:
    def __init__(self, history_limit: Optional[int] = None):
        self.history_limit = history_limit
        self._channels: Dict[str, ChannelState] = {}

    @staticmethod
    def normalize(name: str) -> str:
        return (name or '').strip().lstrip('#').lower()

    def get(self, name: str) -> ChannelState:
        key = self.normalize(name)
        state = self._channels.get(key)
        if state is None:
            state = ChannelState(key, history_limit=self.history_limit)
            self._channels[key] = state
        return state

    def drop(self, name: str) -> None:
        self._channels.pop(self.normalize(name), None)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.normalize(name) in self._channels

    def __len__(self) -> int:
        return len(self._channels)


@dataclass(frozen=True)
class Command:
    name: str
    argument: str = ''


def parse_command(text: str, commands_map: Optional[Mapping[str, Sequence[str]]] = None) -> Optional[Command]:
    commands_map = commands_map or DEFAULT_COMMANDS
    content = (text or '').strip()
    prefix = (commands_map.get('prefix') or ['!'])[0]
    if not content.startswith(prefix):
        return None
    parts = content[len(prefix):].split(None, 1)
    if not parts:
        return None
    word = parts[0].lower()
    arg = parts[1].strip() if len(parts) > 1 else ''
    for name in COMMAND_ORDER:
        if word not in (alias.lower() for alias in commands_map.get(name, ())):
            continue
        if name in NO_ARGUMENT_COMMANDS and arg:
            return None
        if name in USERNAME_COMMANDS:
            m = USERNAME_RE.match(arg)
            if not m:
                return None
            arg = m.group(1).lower()
        return Command(name, arg)
    return None


def extract_clip_id(raw: str) -> Optional[str]:
    """Return the clip slug from a bare id or a Twitch clip URL.

    Recognised URLs are ``clips.twitch.tv/<slug>`` and
    ``www.twitch.tv/<user>/clip/<slug>``; anything else yields None.
    """
    tokens = (raw or '').split()
    if not tokens:
        return None
    candidate = tokens[0]
    parsed = urlparse(candidate)
    if not (parsed.scheme and parsed.netloc):
        return candidate
    host = (parsed.hostname or '').lower()
    path = parsed.path or ''
    if host == 'clips.twitch.tv':
        slug = path.strip('/').split('/')[0]
    elif (host == 'twitch.tv' or host.endswith('.twitch.tv')) and '/clip/' in path:
        slug = path.split('/clip/', 1)[1].strip('/').split('/')[0]
    else:
        return None
    return slug or None


def merge_allowed_commands(stored: Optional[Mapping[str, object]]) -> Dict[str, Dict[str, object]]:
    merged = {key: dict(value) for key, value in DEFAULT_ALLOWED_COMMANDS.items()}
    for key, value in (stored or {}).items():
        if isinstance(value, Mapping):
            merged[key] = {
                'enabled': bool(value.get('enabled')),
                'roles': list(value.get('roles') or []),
            }
    return merged


class ClipSource(Protocol):
    async def get_user(self, login: str) -> Optional[dict]: ...
    async def get_clip_info(self, clip_id: str) -> Optional[dict]: ...
    async def get_all_clips(self, user_id: str) -> List[dict]: ...
    async def create_clip(self, broadcaster_id: str, user_token: str) -> Optional[str]: ...


class OverlayNotifier(Protocol):
    async def play_clip(self, channel: str, clip: ClipRef) -> None: ...
    async def close_overlay(self, channel: str) -> None: ...


ConfigLookup = Callable[[str], Optional[Mapping[str, object]]]
TokenLookup = Callable[[str], Awaitable[Optional[str]]]
ClipAnnouncer = Callable[[str, str], Awaitable[None]]


class CommandDispatcher:
    def __init__(
        self,
        clips: ClipSource,
        overlay: OverlayNotifier,
        *,
        config_lookup: ConfigLookup,
        token_lookup: Optional[TokenLookup] = None,
        announce_clip: Optional[ClipAnnouncer] = None,
        commands_map: Optional[Mapping[str, Sequence[str]]] = None,
        registry: Optional[ChannelRegistry] = None,
        history_limit: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        self.clips = clips
        self.overlay = overlay
        self.config_lookup = config_lookup
        self.token_lookup = token_lookup
        self.announce_clip = announce_clip
        self.commands_map = commands_map or DEFAULT_COMMANDS
        self.registry = registry or ChannelRegistry(history_limit)
        self.rng = rng or random.Random()
        self._handlers = {
            'watch': self._watch,
            'replay': self._replay,
            'repeat': self._repeat,
            'stoprepeat': self._stoprepeat,
            'stop': self._stop,
            'shoutout': self._shoutout,
        }

    def permitted(self, channel: str, command: Command, tags: ChatterTags) -> bool:
        allowed = merge_allowed_commands(self.config_lookup(channel))
        entry = allowed.get(CONFIG_KEYS[command.name]) or {}
        return bool(entry.get('enabled')) and is_allowed(tags, entry.get('roles') or [])

    async def handle_message(self, channel: str, tags: ChatterTags, text: str) -> Optional[str]:
        """Run the command in ``text`` if any; return its name when it was accepted."""
        state = self.registry.get(channel)
        command = parse_command(text, self.commands_map)
        if command is None:
            return None
        if not self.permitted(state.name, command, tags):
            logger.debug('[%s] !%s denied', state.name, command.name)
            return None
        try:
            if command.name == 'clip':
                await self._clip(state)
            else:
                async with state.lock:
                    await self._handlers[command.name](state, command.argument)
        except Exception:
            logger.exception('[%s] !%s failed', state.name, command.name)
            return None
        return command.name

    async def clip_finished(self, channel: str) -> None:
        state = self.registry.get(channel)
        async with state.lock:
            if state.state is PlaybackState.IDLE:
                # nothing on screen, so the ack is a duplicate or stale
                logger.debug('[%s] clipFinished while idle ignored', state.name)
                return
            state.is_playing = False
            if state.repeat_target:
                try:
                    await self.select_and_enqueue(state, state.repeat_target)
                except Exception:
                    logger.exception('[%s] repeat selection for %s failed', state.name, state.repeat_target)
            await self._safe_play_next(state)

    async def overlay_connected(self, channel: str) -> None:
        state = self.registry.get(channel)
        async with state.lock:
            state.is_playing = False
            await self._safe_play_next(state)

    async def _safe_play_next(self, state: ChannelState) -> None:
        try:
            await self.play_next(state)
        except Exception:
            logger.exception('[%s] failed to advance playback', state.name)

    async def play_next(self, state: ChannelState) -> Optional[ClipRef]:
        if state.state is not PlaybackState.IDLE or not state.queue:
            return None
        clip = state.queue.popleft()
        state.last_clip = clip
        state.is_playing = True
        logger.info('[%s] playing %s', state.name, clip.url)
        await self.overlay.play_clip(state.name, clip)
        return clip

    async def select_and_enqueue(self, state: ChannelState, username: str) -> Optional[ClipRef]:
        generation = state.generation
        user = await self.clips.get_user(username)
        if not user:
            logger.warning('[%s] unknown user %s', state.name, username)
            return None
        clips = await self.clips.get_all_clips(str(user['id']))
        if generation != state.generation:
            logger.info('[%s] dropping stale clip selection for %s', state.name, username)
            return None
        pick = self._pick(state, clips, username)
        if pick is None:
            logger.info('[%s] %s has no clips', state.name, username)
            return None
        state.queue.append(pick)
        await self.play_next(state)
        return pick

    def _pick(self, state: ChannelState, clips: Sequence[Mapping[str, object]], username: str) -> Optional[ClipRef]:
        refs = [ClipRef.from_api(c) for c in clips if c.get('id')]
        if not refs:
            return None
        pool: List[ClipRef] = []
        for _ in range(2):
            pool = [
                c for c in refs
                if c.id not in state.played_shoutout_ids and c.id not in state.played_repeat_ids
            ]
            if pool:
                break
            state.played_shoutout_ids.clear()
            state.played_repeat_ids.clear()
        pick = self.rng.choice(pool)
        state.played_shoutout_ids.add(pick.id)
        if state.repeat_target == username:
            state.played_repeat_ids.add(pick.id)
        return pick

    async def _play_now(self, state: ChannelState, clip: ClipRef) -> None:
        state.interrupt()
        state.last_clip = clip
        state.is_playing = True
        logger.info('[%s] playing %s', state.name, clip.url)
        await self.overlay.play_clip(state.name, clip)

    async def _watch(self, state: ChannelState, arg: str) -> None:
        clip_id = extract_clip_id(arg)
        if not clip_id:
            logger.warning('[%s] !watch without a usable clip reference: %r', state.name, arg)
            return
        info = await self.clips.get_clip_info(clip_id)
        if not info:
            logger.warning('[%s] clip %s not found', state.name, clip_id)
            return
        await self._play_now(state, ClipRef.from_api(info, clip_id))

    async def _replay(self, state: ChannelState, arg: str) -> None:
        if state.last_clip is None:
            return
        await self._play_now(state, state.last_clip)

    async def _repeat(self, state: ChannelState, username: str) -> None:
        state.repeat_target = username
        logger.info('[%s] repeat mode on for %s', state.name, username)
        await self.select_and_enqueue(state, username)

    async def _stoprepeat(self, state: ChannelState, arg: str) -> None:
        state.repeat_target = None
        logger.info('[%s] repeat mode off', state.name)

    async def _stop(self, state: ChannelState, arg: str) -> None:
        state.interrupt()
        state.is_playing = False
        logger.info('[%s] stopped', state.name)
        await self.overlay.close_overlay(state.name)

    async def _shoutout(self, state: ChannelState, username: str) -> None:
        await self.select_and_enqueue(state, username)

    async def _clip(self, state: ChannelState) -> None:
        token = await self.token_lookup(state.name) if self.token_lookup else None
        if not token:
            logger.warning('[%s] !clip: no broadcaster token stored', state.name)
            return
        user = await self.clips.get_user(state.name)
        if not user:
            logger.warning('[%s] !clip: broadcaster lookup failed', state.name)
            return
        clip_id = await self.clips.create_clip(str(user['id']), token)
        if not clip_id:
            logger.warning('[%s] !clip: Twitch did not create a clip', state.name)
            return
        url = CLIP_URL_TEMPLATE.format(id=clip_id)
        logger.info('[%s] clip created %s', state.name, url)
        if self.announce_clip:
            await self.announce_clip(state.name, url)
