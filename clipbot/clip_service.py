from __future__ import annotations
import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

import aiohttp

HELIX_URL = 'https://api.twitch.tv/helix'
TOKEN_URL = 'https://id.twitch.tv/oauth2/token'
# Refresh the app token this many seconds before Twitch says it expires.
TOKEN_REFRESH_MARGIN = 60
CLIPS_PAGE_SIZE = 100

logger = logging.getLogger(__name__)


class ClipServiceError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


class AppTokenHolder:
    """Client-credentials token shared by every Helix call of the process.

    Concurrent callers that find the token missing or about to expire wait on
    one refresh instead of each requesting their own token.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        clock: Callable[[], float] = time.monotonic,
        refresh_margin: int = TOKEN_REFRESH_MARGIN,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self._clock = clock
        self._refresh_margin = refresh_margin
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def _is_valid(self) -> bool:
        return bool(self._token) and self._clock() < self._expires_at - self._refresh_margin

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def get_valid_token(self, session: aiohttp.ClientSession) -> str:
        if self._is_valid():
            return self._token
        async with self._lock:
            if not self._is_valid():
                await self._refresh(session)
            return self._token

    async def _refresh(self, session: aiohttp.ClientSession) -> None:
        payload = await self._request_token(session)
        token = payload.get('access_token')
        if not token:
            raise ClipServiceError(0, f"app token response missing access_token: {payload.get('message') or payload}")
        self._token = token
        self._expires_at = self._clock() + int(payload.get('expires_in', 3600))
        logger.info('refreshed Twitch app access token')

    async def _request_token(self, session: aiohttp.ClientSession) -> Dict[str, object]:
        data = {
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'grant_type': 'client_credentials',
        }
        async with session.post(TOKEN_URL, data=data) as r:
            if r.status >= 400:
                raise ClipServiceError(r.status, await r.text() or 'token request failed')
            return await r.json()


class ClipService:
    """Thin Helix client for the four calls the clip queue needs."""

    def __init__(self, client_id: str, client_secret: str, *, timeout: float = 10):
        self.client_id = client_id
        self.tokens = AppTokenHolder(client_id, client_secret)
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _helix(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, object]] = None,
        *,
        user_token: Optional[str] = None,
    ) -> Dict[str, object]:
        if not self.session:
            await self.start()
        if user_token:
            bearer = user_token.removeprefix('oauth:')
        else:
            bearer = await self.tokens.get_valid_token(self.session)
        headers = {'Client-ID': self.client_id, 'Authorization': f'Bearer {bearer}'}
        async with self.session.request(method, f"{HELIX_URL}{path}", params=params, headers=headers) as r:
            if r.status >= 400:
                if r.status == 401 and not user_token:
                    self.tokens.invalidate()
                try:
                    detail = await r.text()
                except Exception:
                    detail = ''
                raise ClipServiceError(r.status, detail or f"{method} {path} failed")
            return await r.json()

    @staticmethod
    def _first(payload: Dict[str, object]) -> Optional[dict]:
        data = payload.get('data') if isinstance(payload, dict) else None
        if isinstance(data, list) and data:
            return data[0]
        return None

    async def get_user(self, login: str) -> Optional[dict]:
        if not login:
            return None
        return self._first(await self._helix('GET', '/users', {'login': login.lower()}))

    async def get_clip_info(self, clip_id: str) -> Optional[dict]:
        if not clip_id:
            return None
        return self._first(await self._helix('GET', '/clips', {'id': clip_id}))

    async def get_all_clips(self, user_id: str) -> List[dict]:
        clips: List[dict] = []
        cursor: Optional[str] = None
        while True:
            params: Dict[str, object] = {'broadcaster_id': user_id, 'first': CLIPS_PAGE_SIZE}
            if cursor:
                params['after'] = cursor
            payload = await self._helix('GET', '/clips', params)
            page = payload.get('data') or []
            clips.extend(page)
            cursor = (payload.get('pagination') or {}).get('cursor')
            if not cursor or not page:
                return clips

    async def create_clip(self, broadcaster_id: str, user_token: str) -> Optional[str]:
        payload = await self._helix(
            'POST', '/clips', {'broadcaster_id': broadcaster_id}, user_token=user_token,
        )
        created = self._first(payload)
        return created.get('id') if created else None
