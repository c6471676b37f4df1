from __future__ import annotations
import asyncio
import contextlib
import json
import logging
import os
import re
import secrets
import time
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlencode

import requests
from fastapi import (
    FastAPI,
    HTTPException,
    Depends,
    Header,
    Cookie,
    Request as FastAPIRequest,
    WebSocket,
)
from fastapi import WebSocketDisconnect
from fastapi.responses import RedirectResponse, HTMLResponse
from pydantic import BaseModel, Field
from sqlalchemy import create_engine, Column, Integer, String, Text, DateTime, Boolean, ForeignKey, func
from sqlalchemy.orm import declarative_base, relationship, sessionmaker, Session
from sse_starlette.sse import EventSourceResponse

from clipbot.clip_queue import merge_allowed_commands

# =====================================
# Config
# =====================================
DB_URL = os.getenv("DATABASE_URL", "sqlite:////data/db.sqlite")

# Shared secret for the bot worker's requests.
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "change-me")

SESSION_COOKIE = "clip_overlay_session"

TWITCH_CLIENT_ID = os.getenv("TWITCH_CLIENT_ID")
TWITCH_CLIENT_SECRET = os.getenv("TWITCH_CLIENT_SECRET")
TWITCH_REDIRECT_URI = os.getenv("TWITCH_REDIRECT_URI")
TWITCH_SCOPES = os.getenv("TWITCH_SCOPES", "user:read:email clips:edit").split()

# Sound the overlay plays when a chatter is banned; empty uses a built-in tone.
BAN_SOUND_URL = os.getenv("BAN_SOUND_URL", "")

TWITCH_AUTHORIZE_URL = "https://id.twitch.tv/oauth2/authorize"
TWITCH_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
HELIX_USERS_URL = "https://api.twitch.tv/helix/users"

OAUTH_STATE_TTL = 600

API_VERSION = "0.1.0"

CHANNEL_NAME_RE = re.compile(r"^\w+$")

APP_ACCESS_TOKEN: Optional[str] = None
APP_TOKEN_EXPIRES = 0.0

_oauth_states: dict[str, float] = {}
_bot_log_listeners: set[asyncio.Queue[str]] = set()

logger = logging.getLogger(__name__)

engine = create_engine(DB_URL, connect_args={"check_same_thread": False} if DB_URL.startswith("sqlite") else {})
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


# =====================================
# Models
# =====================================
class TwitchUser(Base):
    __tablename__ = "twitch_users"
    id = Column(Integer, primary_key=True)
    twitch_id = Column(String, unique=True, nullable=False)
    login = Column(String, nullable=False)
    display_name = Column(String)
    access_token = Column(String)
    refresh_token = Column(String)
    scopes = Column(Text)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    channels = relationship("ChannelConfig", back_populates="owner")


class ChannelConfig(Base):
    __tablename__ = "channel_configs"
    id = Column(Integer, primary_key=True)
    channel_name = Column(String, unique=True, nullable=False)  # lowercase login
    channel_id = Column(String)  # Twitch user id
    allowed_commands = Column(Text)  # JSON
    join_active = Column(Boolean, default=True, nullable=False)
    owner_id = Column(Integer, ForeignKey("twitch_users.id"))
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = relationship("TwitchUser", back_populates="channels")


Base.metadata.create_all(bind=engine)


# =====================================
# Schemas
# =====================================
RoleName = Literal["viewer", "vip", "moderator", "broadcaster", "subscriber"]


class CommandRule(BaseModel):
    enabled: bool = False
    roles: List[RoleName] = Field(default_factory=list)


class ConfigIn(BaseModel):
    allowedCommands: Dict[str, CommandRule]


class ConfigOut(BaseModel):
    username: str
    allowedCommands: Dict[str, CommandRule]


class AddChannelIn(BaseModel):
    channel: str = Field(min_length=1)


class SuccessOut(BaseModel):
    success: bool = True


class ChannelOut(BaseModel):
    channel_name: str
    channel_id: Optional[str]
    allowed_commands: Dict[str, CommandRule]


class ClipTokenOut(BaseModel):
    access_token: str


class ClipPayload(BaseModel):
    id: str
    url: str
    duration: float


class OverlayEventIn(BaseModel):
    type: Literal["playClip", "closeOverlay", "playBanSound"]
    payload: Optional[ClipPayload] = None


class OverlayEventAck(BaseModel):
    delivered: int


class BotLogEventIn(BaseModel):
    level: str = "info"
    message: str
    source: str = "bot"
    metadata: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None


class BotLogAckOut(BaseModel):
    success: bool


# =====================================
# Twitch helpers
# =====================================
def get_app_access_token() -> str:
    global APP_ACCESS_TOKEN, APP_TOKEN_EXPIRES
    if not APP_ACCESS_TOKEN or time.time() > APP_TOKEN_EXPIRES:
        if not TWITCH_CLIENT_ID or not TWITCH_CLIENT_SECRET:
            raise RuntimeError("twitch oauth credentials are not configured")
        response = requests.post(
            TWITCH_TOKEN_URL,
            data={
                "client_id": TWITCH_CLIENT_ID,
                "client_secret": TWITCH_CLIENT_SECRET,
                "grant_type": "client_credentials",
            },
            timeout=5,
        )
        response.raise_for_status()
        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise requests.HTTPError(
                f"Twitch app access token response missing access_token: {payload.get('message') or payload}",
                response=response,
            )
        APP_ACCESS_TOKEN = token
        expires_in = int(payload.get("expires_in", 3600))
        APP_TOKEN_EXPIRES = time.time() + expires_in - 60
    return APP_ACCESS_TOKEN


def lookup_twitch_user(login: str) -> Optional[Dict[str, Any]]:
    global APP_ACCESS_TOKEN
    token = get_app_access_token()
    response = requests.get(
        HELIX_USERS_URL,
        params={"login": login},
        headers={"Authorization": f"Bearer {token}", "Client-Id": TWITCH_CLIENT_ID or ""},
        timeout=5,
    )
    if response.status_code == 401:
        APP_ACCESS_TOKEN = None
    response.raise_for_status()
    data = response.json().get("data") or []
    return data[0] if data else None


def _cleanup_oauth_states() -> None:
    now = time.time()
    for state, expires in list(_oauth_states.items()):
        if expires < now:
            _oauth_states.pop(state, None)


# =====================================
# Realtime fan-out
# =====================================
class _ChannelBroker:
    __slots__ = ("channel", "listeners")

    def __init__(self, channel: str) -> None:
        self.channel = channel
        self.listeners: set[asyncio.Queue[str]] = set()

    def subscribe(self) -> asyncio.Queue[str]:
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=1000)
        self.listeners.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[str]) -> None:
        self.listeners.discard(queue)

    def put_nowait(self, message: str) -> int:
        delivered = 0
        stale: list[asyncio.Queue[str]] = []
        for queue in list(self.listeners):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                stale.append(queue)
                logger.warning("event dropped for channel %s", self.channel)
        for queue in stale:
            self.listeners.discard(queue)
        return delivered

    def has_listeners(self) -> bool:
        return bool(self.listeners)


# overlay pages of a channel, and the bot worker listening for overlay acks
_overlay_brokers: dict[str, _ChannelBroker] = {}
_bot_brokers: dict[str, _ChannelBroker] = {}


def _subscribe(brokers: dict[str, _ChannelBroker], channel: str) -> asyncio.Queue[str]:
    broker = brokers.get(channel)
    if broker is None:
        broker = _ChannelBroker(channel)
        brokers[channel] = broker
    return broker.subscribe()


def _unsubscribe(brokers: dict[str, _ChannelBroker], channel: str, queue: asyncio.Queue[str]) -> None:
    broker = brokers.get(channel)
    if not broker:
        return
    broker.unsubscribe(queue)
    if not broker.has_listeners():
        brokers.pop(channel, None)


def _publish(brokers: dict[str, _ChannelBroker], channel: str, event_type: str, payload: Optional[Dict[str, Any]]) -> int:
    broker = brokers.get(channel)
    if not broker:
        return 0
    message = json.dumps({"type": event_type, "payload": payload})
    return broker.put_nowait(message)


def publish_overlay_event(channel: str, event_type: str, payload: Optional[Dict[str, Any]] = None) -> int:
    return _publish(_overlay_brokers, channel, event_type, payload)


def publish_bot_event(channel: str, event_type: str, payload: Optional[Dict[str, Any]] = None) -> int:
    return _publish(_bot_brokers, channel, event_type, payload)


def handle_overlay_frame(channel: str, raw: str) -> bool:
    """Forward a ``clipFinished`` frame from an overlay to the bot worker."""
    try:
        frame = json.loads(raw)
    except ValueError:
        return False
    if not isinstance(frame, dict) or frame.get("type") != "clipFinished":
        return False
    publish_bot_event(channel, "clipFinished")
    return True


def _broadcast_bot_log(event: Dict[str, Any]) -> None:
    payload = json.dumps(event, default=str)
    stale: list[asyncio.Queue[str]] = []
    for queue in list(_bot_log_listeners):
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            stale.append(queue)
    for queue in stale:
        _bot_log_listeners.discard(queue)


# =====================================
# FastAPI app and deps
# =====================================
app = FastAPI(title="Clip Overlay Backend", version=API_VERSION)


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _normalize_channel(name: str) -> str:
    return (name or "").strip().lstrip("#").lower()


def _user_from_token(token: Optional[str], db: Session) -> Optional[TwitchUser]:
    if not token:
        return None
    return db.query(TwitchUser).filter_by(access_token=token).one_or_none()


def _request_token(authorization: Optional[str], session_token: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1]
    return session_token


def get_current_user(
    authorization: str = Header(None),
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    db: Session = Depends(get_db),
) -> TwitchUser:
    user = _user_from_token(_request_token(authorization, session_token), db)
    if not user:
        raise HTTPException(status_code=401, detail="not authenticated")
    return user


def require_admin(x_admin_token: str = Header(None)) -> None:
    if not x_admin_token or not secrets.compare_digest(x_admin_token, ADMIN_TOKEN):
        raise HTTPException(status_code=401, detail="invalid admin token")


def _get_channel(db: Session, channel: str) -> Optional[ChannelConfig]:
    return (
        db.query(ChannelConfig)
        .filter(func.lower(ChannelConfig.channel_name) == _normalize_channel(channel))
        .one_or_none()
    )


def _allowed_commands(row: Optional[ChannelConfig]) -> Dict[str, Dict[str, Any]]:
    stored = None
    if row and row.allowed_commands:
        try:
            stored = json.loads(row.allowed_commands)
        except ValueError:
            logger.warning("discarding unreadable command config for %s", row.channel_name)
    return merge_allowed_commands(stored if isinstance(stored, dict) else None)


# =====================================
# Broadcaster routes
# =====================================
@app.get("/", response_class=HTMLResponse)
def index(
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    db: Session = Depends(get_db),
):
    if not _user_from_token(session_token, db):
        return RedirectResponse("/auth/login")
    return HTMLResponse(CONFIG_HTML)


@app.get("/auth/login")
def auth_login(request: FastAPIRequest):
    if not TWITCH_CLIENT_ID or not TWITCH_CLIENT_SECRET:
        raise HTTPException(status_code=500, detail="Twitch OAuth not configured")
    _cleanup_oauth_states()
    state = secrets.token_urlsafe(24)
    _oauth_states[state] = time.time() + OAUTH_STATE_TTL
    params = {
        "response_type": "code",
        "client_id": TWITCH_CLIENT_ID,
        "redirect_uri": TWITCH_REDIRECT_URI or str(request.url_for("auth_callback")),
        "scope": " ".join(TWITCH_SCOPES),
        "state": state,
    }
    return RedirectResponse(f"{TWITCH_AUTHORIZE_URL}?{urlencode(params)}")


@app.get("/auth/callback")
def auth_callback(
    code: str,
    state: str,
    request: FastAPIRequest,
    db: Session = Depends(get_db),
):
    _cleanup_oauth_states()
    if _oauth_states.pop(state, None) is None:
        raise HTTPException(status_code=400, detail="invalid oauth state")
    redirect_uri = TWITCH_REDIRECT_URI or str(request.url_for("auth_callback"))
    try:
        token_resp = requests.post(
            TWITCH_TOKEN_URL,
            data={
                "client_id": TWITCH_CLIENT_ID,
                "client_secret": TWITCH_CLIENT_SECRET,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
            },
            timeout=5,
        )
        token_resp.raise_for_status()
        token_data = token_resp.json()
        access_token = token_data["access_token"]
        user_resp = requests.get(
            HELIX_USERS_URL,
            headers={"Authorization": f"Bearer {access_token}", "Client-Id": TWITCH_CLIENT_ID or ""},
            timeout=5,
        )
        user_resp.raise_for_status()
        user_info = user_resp.json()["data"][0]
    except (requests.RequestException, KeyError, IndexError, ValueError) as exc:
        logger.warning("Twitch login failed: %s", exc)
        raise HTTPException(status_code=502, detail="twitch login failed")

    user = db.query(TwitchUser).filter_by(twitch_id=user_info["id"]).one_or_none()
    if not user:
        user = TwitchUser(twitch_id=user_info["id"], login=user_info["login"])
        db.add(user)
    user.login = user_info["login"]
    user.display_name = user_info.get("display_name") or user_info["login"]
    user.access_token = access_token
    user.refresh_token = token_data.get("refresh_token")
    user.scopes = " ".join(token_data.get("scope") or [])
    db.commit()
    db.refresh(user)

    row = _get_channel(db, user.login)
    if row:
        row.owner_id = user.id
        row.channel_id = user.twitch_id
        db.commit()

    response = RedirectResponse("/")
    cookie_kwargs: Dict[str, Any] = {"httponly": True, "samesite": "lax", "path": "/"}
    if isinstance(token_data.get("expires_in"), int):
        cookie_kwargs["max_age"] = token_data["expires_in"]
    response.set_cookie(SESSION_COOKIE, access_token, **cookie_kwargs)
    return response


@app.get("/logout")
def logout():
    response = RedirectResponse("/")
    response.delete_cookie(SESSION_COOKIE, path="/")
    return response


@app.get("/get-config", response_model=ConfigOut)
def get_config(current: TwitchUser = Depends(get_current_user), db: Session = Depends(get_db)):
    row = _get_channel(db, current.login)
    return {
        "username": current.display_name or current.login,
        "allowedCommands": _allowed_commands(row),
    }


# Publishing endpoints run on the event loop that owns the listener queues.
@app.post("/save-config", response_model=SuccessOut)
async def save_config(
    payload: ConfigIn,
    current: TwitchUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    channel = _normalize_channel(current.login)
    allowed = merge_allowed_commands(
        {key: rule.model_dump() for key, rule in payload.allowedCommands.items()}
    )
    row = _get_channel(db, channel)
    if not row:
        row = ChannelConfig(channel_name=channel)
        db.add(row)
    row.channel_id = current.twitch_id
    row.owner_id = current.id
    row.join_active = True
    row.allowed_commands = json.dumps(allowed)
    db.commit()
    publish_bot_event(channel, "config", {"allowed_commands": allowed})
    logger.info("saved command config for %s", channel)
    return {"success": True}


@app.post("/add-channel", response_model=SuccessOut)
def add_channel(
    payload: AddChannelIn,
    current: TwitchUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    channel = _normalize_channel(payload.channel)
    if not CHANNEL_NAME_RE.match(channel):
        raise HTTPException(status_code=422, detail="invalid channel name")
    row = _get_channel(db, channel)
    if row and row.channel_id:
        row.join_active = True
        db.commit()
        return {"success": True}
    try:
        info = lookup_twitch_user(channel)
    except (requests.RequestException, RuntimeError) as exc:
        logger.warning("Twitch lookup for %s failed: %s", channel, exc)
        raise HTTPException(status_code=502, detail="twitch lookup failed")
    if not info:
        raise HTTPException(status_code=404, detail="channel not found")
    if not row:
        row = ChannelConfig(channel_name=channel)
        db.add(row)
    row.channel_id = str(info["id"])
    row.join_active = True
    owner = db.query(TwitchUser).filter_by(twitch_id=row.channel_id).one_or_none()
    if owner:
        row.owner_id = owner.id
    db.commit()
    logger.info("%s added channel %s", current.login, channel)
    return {"success": True}


# =====================================
# Overlay
# =====================================
@app.get("/overlay/{channel}", response_class=HTMLResponse)
def overlay_page(channel: str):
    key = _normalize_channel(channel)
    if not CHANNEL_NAME_RE.match(key):
        raise HTTPException(status_code=404, detail="channel not found")
    html = OVERLAY_HTML.replace("__CHANNEL__", json.dumps(key)).replace("__BAN_SOUND__", json.dumps(BAN_SOUND_URL))
    return HTMLResponse(html)


@app.websocket("/overlay/{channel}/ws")
async def overlay_socket(channel: str, websocket: WebSocket) -> None:
    key = _normalize_channel(channel)
    if not CHANNEL_NAME_RE.match(key):
        await websocket.accept()
        await websocket.close(code=1008)
        return
    queue = _subscribe(_overlay_brokers, key)
    # a freshly loaded overlay is not showing anything
    publish_bot_event(key, "overlayConnected")
    await websocket.accept()
    send_task: asyncio.Task[str] = asyncio.create_task(queue.get())
    receive_task = asyncio.create_task(websocket.receive_text())
    try:
        while True:
            done, _ = await asyncio.wait(
                {send_task, receive_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if receive_task in done:
                try:
                    raw = receive_task.result()
                except WebSocketDisconnect:
                    break
                handle_overlay_frame(key, raw)
                receive_task = asyncio.create_task(websocket.receive_text())
            if send_task in done:
                try:
                    await websocket.send_text(send_task.result())
                except WebSocketDisconnect:
                    break
                send_task = asyncio.create_task(queue.get())
    finally:
        send_task.cancel()
        receive_task.cancel()
        with contextlib.suppress(Exception):
            await asyncio.gather(send_task, receive_task, return_exceptions=True)
        _unsubscribe(_overlay_brokers, key, queue)


# =====================================
# Bot worker routes
# =====================================
@app.get("/channels", response_model=List[ChannelOut], dependencies=[Depends(require_admin)])
def list_channels(db: Session = Depends(get_db)):
    rows = (
        db.query(ChannelConfig)
        .filter(ChannelConfig.join_active.is_(True))
        .order_by(ChannelConfig.channel_name.asc())
        .all()
    )
    return [
        {
            "channel_name": row.channel_name,
            "channel_id": row.channel_id,
            "allowed_commands": _allowed_commands(row),
        }
        for row in rows
    ]


@app.get("/channels/{channel}/clip_token", response_model=ClipTokenOut, dependencies=[Depends(require_admin)])
def clip_token(channel: str, db: Session = Depends(get_db)):
    row = _get_channel(db, channel)
    if not row or not row.owner or not row.owner.access_token:
        raise HTTPException(status_code=404, detail="no broadcaster token for channel")
    return {"access_token": row.owner.access_token}


@app.post("/channels/{channel}/overlay", response_model=OverlayEventAck, dependencies=[Depends(require_admin)])
async def push_overlay_event(channel: str, event: OverlayEventIn):
    payload = event.payload.model_dump() if event.payload else None
    delivered = publish_overlay_event(_normalize_channel(channel), event.type, payload)
    if not delivered:
        logger.info("no overlay connected for %s; %s dropped", channel, event.type)
    return {"delivered": delivered}


@app.get("/channels/{channel}/bot/stream", dependencies=[Depends(require_admin)])
async def stream_bot_events(channel: str):
    key = _normalize_channel(channel)
    q = _subscribe(_bot_brokers, key)

    async def gen():
        try:
            yield {"event": "bot", "data": "init"}
            while True:
                msg = await q.get()
                yield {"event": "bot", "data": msg}
        finally:
            _unsubscribe(_bot_brokers, key, q)

    return EventSourceResponse(
        gen(),
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )


@app.post("/bot/logs", response_model=BotLogAckOut, dependencies=[Depends(require_admin)])
async def push_bot_log(event: BotLogEventIn):
    timestamp = event.timestamp or datetime.utcnow()
    payload = {
        "type": "log",
        "level": event.level,
        "message": event.message,
        "source": event.source,
        "timestamp": timestamp,
        "metadata": event.metadata or {},
    }
    _broadcast_bot_log(payload)
    return {"success": True}


@app.get("/bot/logs/stream", dependencies=[Depends(require_admin)])
async def stream_bot_logs():
    queue: asyncio.Queue[str] = asyncio.Queue(maxsize=1000)
    _bot_log_listeners.add(queue)

    async def event_stream():
        try:
            yield {"event": "log", "data": json.dumps({"type": "ready"})}
            while True:
                msg = await queue.get()
                yield {"event": "log", "data": msg}
        finally:
            _bot_log_listeners.discard(queue)

    return EventSourceResponse(
        event_stream(),
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )


CONFIG_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <title>Clip Overlay Commands</title>
  <style>
    body { font-family: sans-serif; max-width: 640px; margin: 2rem auto; }
    table { border-collapse: collapse; width: 100%; }
    td, th { padding: 6px 8px; border-bottom: 1px solid #ddd; text-align: left; }
  </style>
</head>
<body>
  <h1>Commands for <span id="user"></span></h1>
  <table id="commands"><thead><tr><th>Command</th><th>Enabled</th><th>Roles</th></tr></thead><tbody></tbody></table>
  <p><button id="save">Save</button> <span id="status"></span></p>
  <h2>Monitor another channel</h2>
  <p><input id="channel" placeholder="channel"> <button id="add">Add</button></p>
  <p><a href="/logout">Log out</a></p>
  <script>
    const ROLES = ["viewer", "subscriber", "vip", "moderator", "broadcaster"];
    const body = document.querySelector("#commands tbody");
    let config = {};
    function render() {
      body.innerHTML = "";
      for (const [name, rule] of Object.entries(config)) {
        const row = document.createElement("tr");
        const roles = ROLES.map(r =>
          `<label><input type="checkbox" data-cmd="${name}" data-role="${r}" ${rule.roles.includes(r) ? "checked" : ""}> ${r}</label>`
        ).join(" ");
        row.innerHTML = `<td>!${name}</td><td><input type="checkbox" data-cmd="${name}" data-enabled ${rule.enabled ? "checked" : ""}></td><td>${roles}</td>`;
        body.appendChild(row);
      }
    }
    function collect() {
      const out = {};
      for (const name of Object.keys(config)) {
        out[name] = {
          enabled: document.querySelector(`[data-cmd="${name}"][data-enabled]`).checked,
          roles: ROLES.filter(r => document.querySelector(`[data-cmd="${name}"][data-role="${r}"]`).checked),
        };
      }
      return out;
    }
    async function load() {
      const resp = await fetch("/get-config");
      const data = await resp.json();
      document.getElementById("user").textContent = data.username;
      config = data.allowedCommands;
      render();
    }
    document.getElementById("save").onclick = async () => {
      const resp = await fetch("/save-config", {
        method: "POST", headers: {"Content-Type": "application/json"},
        body: JSON.stringify({allowedCommands: collect()}),
      });
      document.getElementById("status").textContent = resp.ok ? "Saved" : "Save failed";
    };
    document.getElementById("add").onclick = async () => {
      const channel = document.getElementById("channel").value.trim();
      if (!channel) return;
      const resp = await fetch("/add-channel", {
        method: "POST", headers: {"Content-Type": "application/json"},
        body: JSON.stringify({channel}),
      });
      document.getElementById("status").textContent = resp.ok ? `Added ${channel}` : "Add failed";
    };
    load();
  </script>
</body>
</html>
"""

OVERLAY_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <title>Clip Overlay</title>
  <style>
    html, body { margin: 0; height: 100%; background: transparent; overflow: hidden; }
    #stage { display: none; width: 100vw; height: 100vh; }
    #stage.visible { display: block; }
    iframe { width: 100%; height: 100%; border: 0; }
  </style>
</head>
<body>
  <div id="stage"><iframe id="player" allow="autoplay" allowfullscreen></iframe></div>
  <script>
    const channel = __CHANNEL__;
    const banSoundUrl = __BAN_SOUND__;
    const stage = document.getElementById("stage");
    const player = document.getElementById("player");
    let socket = null;
    let timer = null;

    function hide() {
      clearTimeout(timer);
      stage.classList.remove("visible");
      player.src = "about:blank";
    }

    function finish() {
      hide();
      if (socket && socket.readyState === WebSocket.OPEN) {
        socket.send(JSON.stringify({type: "clipFinished"}));
      }
    }

    function play(clip) {
      clearTimeout(timer);
      const params = new URLSearchParams({clip: clip.id, parent: location.hostname, autoplay: "true", muted: "false"});
      player.src = `https://clips.twitch.tv/embed?${params}`;
      stage.classList.add("visible");
      timer = setTimeout(finish, (Math.max(1, clip.duration) + 1) * 1000);
    }

    function playBanSound() {
      if (banSoundUrl) {
        new Audio(banSoundUrl).play().catch(() => {});
        return;
      }
      const ctx = new (window.AudioContext || window.webkitAudioContext)();
      const osc = ctx.createOscillator();
      const gain = ctx.createGain();
      osc.type = "square";
      osc.frequency.value = 220;
      gain.gain.value = 0.2;
      osc.connect(gain).connect(ctx.destination);
      osc.onended = () => ctx.close();
      osc.start();
      osc.stop(ctx.currentTime + 0.4);
    }

    function connect() {
      const proto = location.protocol === "https:" ? "wss" : "ws";
      socket = new WebSocket(`${proto}://${location.host}/overlay/${encodeURIComponent(channel)}/ws`);
      socket.onmessage = (ev) => {
        const msg = JSON.parse(ev.data);
        if (msg.type === "playClip") play(msg.payload);
        else if (msg.type === "closeOverlay") hide();
        else if (msg.type === "playBanSound") playBanSound();
      };
      socket.onclose = () => setTimeout(connect, 3000);
    }

    connect();
  </script>
</body>
</html>
"""
