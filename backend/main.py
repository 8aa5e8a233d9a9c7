import os
import time
import json
import re
import logging
import hmac
import hashlib
import secrets
import base64
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any, Literal

import cloudinary
import cloudinary.uploader

from fastapi import (
    FastAPI,
    HTTPException,
    Request,
    Header,
    Depends,
    UploadFile,
    File,
    Response,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException


# =========================
# Paths
# backend/main.py
# data/{users,chats,messages}.json
# =========================
BACKEND_DIR = os.path.dirname(os.path.abspath(__file__))     # .../backend
PROJECT_ROOT = os.path.dirname(BACKEND_DIR)                  # .../

LOGGER = logging.getLogger("messenger.api")


# =========================
# Config
# =========================
def env_flag(name: str, default: str = "0") -> bool:
    return (os.environ.get(name) or default).strip().lower() in ("1", "true", "yes", "on")


JWT_SECRET = (os.environ.get("JWT_SECRET") or "").strip()
if not JWT_SECRET:
    JWT_SECRET = secrets.token_urlsafe(48)
    LOGGER.warning(
        "JWT_SECRET env is missing. Generated an ephemeral secret for this process; "
        "sessions will be invalidated after restart. Set JWT_SECRET in environment for stable auth."
    )
if len(JWT_SECRET) < 16:
    raise RuntimeError("JWT_SECRET must be at least 16 characters")
JWT_TTL_SECONDS = int(os.environ.get("JWT_TTL_SECONDS", str(60 * 60 * 24 * 7)))  # 7 days
SESSION_COOKIE_NAME = "token"
COOKIE_SECURE = env_flag("COOKIE_SECURE")

DATA_DIR = (os.environ.get("DATA_DIR") or "").strip() or os.path.join(PROJECT_ROOT, "data")

MAX_ATTACHMENT_MB = int(os.environ.get("MAX_ATTACHMENT_MB", "10"))
MAX_ATTACHMENT_BYTES = MAX_ATTACHMENT_MB * 1024 * 1024

SEED_SAMPLE_USERS = env_flag("SEED_SAMPLE_USERS")

USERNAME_RE = re.compile(r"^\S{1,32}$")
RATE_LIMIT_WINDOW_SECONDS = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "60"))
RATE_LIMIT_MAX_AUTH = int(os.environ.get("RATE_LIMIT_MAX_AUTH", "20"))
RATE_LIMIT_MAX_SEND = int(os.environ.get("RATE_LIMIT_MAX_SEND", "100"))


def parse_cors_origins(value: Optional[str]) -> List[str]:
    if value is None or not value.strip():
        return ["http://localhost"]

    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    if not origins:
        return ["http://localhost"]

    # Keep order while removing accidental duplicates from CSV input.
    return list(dict.fromkeys(origins))


CORS_ORIGINS = parse_cors_origins(os.environ.get("CORS_ORIGINS"))

# =========================
# Cloudinary config (optional: attachments also travel inline as data URIs)
# =========================
CLOUDINARY_CLOUD_NAME = (os.environ.get("CLOUDINARY_CLOUD_NAME") or "").strip()
CLOUDINARY_API_KEY = (os.environ.get("CLOUDINARY_API_KEY") or "").strip()
CLOUDINARY_API_SECRET = (os.environ.get("CLOUDINARY_API_SECRET") or "").strip()
CLOUDINARY_CONFIGURED = bool(CLOUDINARY_CLOUD_NAME and CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET)

if CLOUDINARY_CONFIGURED:
    cloudinary.config(
        cloud_name=CLOUDINARY_CLOUD_NAME,
        api_key=CLOUDINARY_API_KEY,
        api_secret=CLOUDINARY_API_SECRET,
        secure=True,
    )


# =========================
# Time helpers
# =========================
def now_ts() -> int:
    return int(time.time())


def now_ms() -> int:
    return int(time.time() * 1000)


def format_iso(dt: datetime) -> str:
    # Same shape as JavaScript's Date.toISOString(): 2024-05-01T12:00:00.000Z
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def iso_now() -> str:
    return format_iso(datetime.now(timezone.utc))


# =========================
# Flat-file store
# =========================
COLLECTIONS = ("users", "chats", "messages")


class StorageError(Exception):
    pass


class JsonStore:
    """
    Users, chats and messages held in memory and mirrored to
    <data_dir>/users.json, chats.json and messages.json.

    Every flush rewrites all three files in full. There is no atomic rename
    and no cross-file commit: a crash mid-flush can leave the files out of
    step with each other.
    """

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.users: List[dict] = []
        self.chats: List[dict] = []
        self.messages: List[dict] = []

    def _path(self, name: str) -> str:
        return os.path.join(self.data_dir, f"{name}.json")

    def load(self) -> Dict[str, List[dict]]:
        os.makedirs(self.data_dir, exist_ok=True)
        loaded: Dict[str, List[dict]] = {}
        for name in COLLECTIONS:
            path = self._path(name)
            if not os.path.isfile(path):
                loaded[name] = []
                continue
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    rows = json.load(fh)
            except (OSError, ValueError) as e:
                raise RuntimeError(f"Cannot read data file {path}: {e}") from e
            if not isinstance(rows, list):
                raise RuntimeError(f"Data file {path} must contain a JSON array")
            loaded[name] = rows

        self.users = loaded["users"]
        self.chats = loaded["chats"]
        self.messages = loaded["messages"]
        LOGGER.info(
            "store loaded from %s: users=%d chats=%d messages=%d",
            self.data_dir, len(self.users), len(self.chats), len(self.messages),
        )
        return loaded

    def flush(self) -> None:
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            for name in COLLECTIONS:
                with open(self._path(name), "w", encoding="utf-8") as fh:
                    json.dump(getattr(self, name), fh, ensure_ascii=False, indent=2)
        except OSError as e:
            LOGGER.exception("store flush to %s failed", self.data_dir)
            raise StorageError(str(e)) from e

    @staticmethod
    def next_id(rows: List[dict]) -> int:
        # millisecond clock, bumped past the newest id so ids stay unique and ordered
        last = max((int(r.get("id") or 0) for r in rows), default=0)
        return max(now_ms(), last + 1)

    def get_user(self, user_id: Any) -> Optional[dict]:
        return next((u for u in self.users if u.get("id") == user_id), None)

    def find_user_by_username(self, username: str) -> Optional[dict]:
        return next((u for u in self.users if u.get("username") == username), None)

    def get_chat(self, chat_id: Any) -> Optional[dict]:
        return next((c for c in self.chats if c.get("id") == chat_id), None)

    def get_message(self, message_id: Any) -> Optional[dict]:
        return next((m for m in self.messages if m.get("id") == message_id), None)

    def chat_messages(self, chat_id: Any) -> List[dict]:
        rows = [m for m in self.messages if m.get("chatId") == chat_id]
        rows.sort(key=lambda m: int(m.get("id") or 0))
        return rows


class MemoryStore(JsonStore):
    """Store double that never touches the filesystem; counts flushes instead."""

    def __init__(self):
        super().__init__(data_dir="")
        self.flush_count = 0

    def load(self) -> Dict[str, List[dict]]:
        return {"users": self.users, "chats": self.chats, "messages": self.messages}

    def flush(self) -> None:
        self.flush_count += 1


def get_store(request: Request) -> JsonStore:
    return request.app.state.store


# =========================
# Password hashing (PBKDF2)
# =========================
def hash_password(password: str, salt: Optional[str] = None) -> str:
    if salt is None:
        salt = secrets.token_hex(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 200_000)
    return f"pbkdf2_sha256$200000${salt}${dk.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        _, _, salt, _ = stored.split("$", 3)
    except ValueError:
        return False
    return hmac.compare_digest(hash_password(password, salt), stored)


# =========================
# Minimal JWT HS256
# =========================
def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64urldecode(data: str) -> bytes:
    pad = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + pad).encode("ascii"))


def jwt_sign(payload: dict) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = b64url(json.dumps(header, separators=(",", ":")).encode())
    payload_b64 = b64url(json.dumps(payload, separators=(",", ":")).encode())
    msg = f"{header_b64}.{payload_b64}".encode("ascii")
    sig = hmac.new(JWT_SECRET.encode(), msg, hashlib.sha256).digest()
    return f"{header_b64}.{payload_b64}.{b64url(sig)}"


def jwt_verify(token: str) -> dict:
    try:
        header_b64, payload_b64, sig_b64 = token.split(".", 2)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token")

    try:
        msg = f"{header_b64}.{payload_b64}".encode("ascii")
        sig = sig_b64.encode("ascii")
    except UnicodeEncodeError:
        raise HTTPException(status_code=401, detail="Invalid token")
    expected = hmac.new(JWT_SECRET.encode(), msg, hashlib.sha256).digest()
    if not hmac.compare_digest(b64url(expected).encode("ascii"), sig):
        raise HTTPException(status_code=401, detail="Bad signature")

    try:
        payload = json.loads(b64urldecode(payload_b64))
        exp = int(payload.get("exp", 0))
    except (ValueError, TypeError, AttributeError):
        raise HTTPException(status_code=401, detail="Invalid token")
    if exp < now_ts():
        raise HTTPException(status_code=401, detail="Token expired")
    return payload


def issue_session_token(user_id: int) -> str:
    now = now_ts()
    return jwt_sign({"sub": str(user_id), "iat": now, "exp": now + JWT_TTL_SECONDS})


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        max_age=JWT_TTL_SECONDS,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, value = parts[0].strip(), parts[1].strip()
    if scheme.lower() != "bearer" or not value:
        return None
    return value


def get_token(request: Request, authorization: Optional[str] = Header(default=None)) -> str:
    token = (request.cookies.get(SESSION_COOKIE_NAME) or "").strip()
    if token:
        return token
    token = _extract_bearer(authorization)
    if token:
        return token
    raise HTTPException(status_code=401, detail="Authentication required")


def _user_id_from_payload(payload: dict) -> Optional[int]:
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        return None


async def get_current_user(
    token: str = Depends(get_token),
    store: JsonStore = Depends(get_store),
) -> dict:
    user = store.get_user(_user_id_from_payload(jwt_verify(token)))
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token")
    # every authenticated call counts as activity, reads included
    user["lastSeen"] = iso_now()
    store.flush()
    return user


def extract_user_id_from_request(request: Request) -> Optional[int]:
    token = (request.cookies.get(SESSION_COOKIE_NAME) or "").strip()
    if not token:
        token = _extract_bearer(request.headers.get("authorization")) or ""
    if not token:
        return None
    try:
        return _user_id_from_payload(jwt_verify(token))
    except HTTPException:
        return None


# =========================
# Rate limiting
# =========================
RATE_BUCKETS: Dict[str, List[int]] = {}


class RateLimitExceeded(Exception):
    def __init__(self, message: str, error: str, retry_after_seconds: int):
        self.message = message
        self.error = error
        self.retry_after_seconds = retry_after_seconds


def check_rate_limit(
    bucket: str,
    limit: int,
    *,
    error: str = "rate_limit_exceeded",
    message: str = "Too many requests. Try again later.",
) -> None:
    now = now_ts()
    start = now - RATE_LIMIT_WINDOW_SECONDS
    arr = [t for t in RATE_BUCKETS.get(bucket, []) if t >= start]
    if len(arr) >= limit:
        retry_after = max(1, RATE_LIMIT_WINDOW_SECONDS - (now - arr[0]))
        raise RateLimitExceeded(message=message, error=error, retry_after_seconds=retry_after)
    arr.append(now)
    RATE_BUCKETS[bucket] = arr


def check_auth_rate_limit(request: Request, action: str) -> None:
    host = request.client.host if request.client else "na"
    check_rate_limit(
        f"auth:{action}:{host}",
        RATE_LIMIT_MAX_AUTH,
        error="auth_rate_limited",
        message="Too many authentication attempts. Try again later.",
    )


# =========================
# Access control
# =========================
def public_user(user: dict) -> dict:
    return {
        "id": user["id"],
        "username": user["username"],
        "name": user.get("name") or user["username"],
        "avatar": user.get("avatar") or "",
        "online": bool(user.get("online")),
    }


def require_user(store: JsonStore, user_id: Any) -> dict:
    user = store.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def require_chat(store: JsonStore, chat_id: Any) -> dict:
    chat = store.get_chat(chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    return chat


def is_member(chat: dict, user_id: Any) -> bool:
    return user_id in (chat.get("participants") or [])


def require_member(chat: dict, user_id: Any) -> None:
    if not is_member(chat, user_id):
        raise HTTPException(status_code=403, detail="Not a member of this chat")


def require_message(store: JsonStore, message_id: Any) -> dict:
    message = store.get_message(message_id)
    if not message:
        raise HTTPException(status_code=404, detail="Message not found")
    return message


def require_sender(message: dict, user_id: Any, action: str) -> None:
    if message.get("senderId") != user_id:
        raise HTTPException(status_code=403, detail=f"Only sender can {action}")


# =========================
# Consistency rules
# =========================
MESSAGE_STATUSES = ("sent", "delivered", "seen")
ATTACHMENT_KINDS = ("image", "audio", "video", "file")
PRIVATE_CHAT = "private"


def advance_status(message: dict, target: str) -> bool:
    """Move a message forward along sent -> delivered -> seen; never backwards."""
    current = message.get("status")
    rank = MESSAGE_STATUSES.index(current) if current in MESSAGE_STATUSES else 0
    if MESSAGE_STATUSES.index(target) <= rank:
        return False
    message["status"] = target
    return True


def mark_seen(messages: List[dict], reader_id: Any) -> int:
    # Fetch counts as read: the status jumps straight from sent to seen.
    updated = 0
    for message in messages:
        if message.get("senderId") != reader_id and advance_status(message, "seen"):
            updated += 1
    return updated


def find_private_chat(store: JsonStore, user_a: Any, user_b: Any) -> Optional[dict]:
    for chat in store.chats:
        if chat.get("type") == PRIVATE_CHAT and is_member(chat, user_a) and is_member(chat, user_b):
            return chat
    return None


def toggle_reaction(message: dict, emoji: str, user_id: Any) -> Dict[str, List[Any]]:
    reactions = message.get("reactions") or {}
    users = list(reactions.get(emoji) or [])
    if user_id in users:
        users = [u for u in users if u != user_id]
    else:
        users.append(user_id)
    if users:
        reactions[emoji] = users
    else:
        reactions.pop(emoji, None)
    message["reactions"] = reactions
    return reactions


def normalize_emoji(value: Optional[str]) -> str:
    return (value or "").strip()[:16]


def merge_reactions(message: dict, submitted: Dict[str, List[Any]], user_id: Any) -> Dict[str, List[Any]]:
    """
    Apply a full reaction map sent by a client. Only the caller's own entries
    are taken from it; every emoji where the caller's membership differs from
    the stored map is toggled. Entries of other users are ignored, and so are
    keys that are blank once normalized.
    """
    wanted = set()
    for key, users in submitted.items():
        emoji = normalize_emoji(key)
        if emoji and user_id in (users or []):
            wanted.add(emoji)

    message["reactions"] = message.get("reactions") or {}
    before = {emoji: list(users or []) for emoji, users in message["reactions"].items()}
    for emoji in dict.fromkeys([*before, *sorted(wanted)]):
        had = user_id in before.get(emoji, [])
        wants = emoji in wanted
        if had != wants:
            toggle_reaction(message, emoji, user_id)
    return message["reactions"]


def pin_message(store: JsonStore, message: dict) -> None:
    # one pinned message per chat: pinning replaces the previous pin
    for other in store.chat_messages(message["chatId"]):
        if other is not message and other.get("pinned"):
            other["pinned"] = False
    message["pinned"] = True


# =========================
# Entity builders
# =========================
def new_user(store: JsonStore, username: str, password_hash: str, name: str) -> dict:
    ts = iso_now()
    return {
        "id": store.next_id(store.users),
        "username": username,
        "password": password_hash,
        "name": name,
        "avatar": "",
        "online": True,
        "lastSeen": ts,
        "createdAt": ts,
    }


def new_chat(store: JsonStore, chat_type: str, name: Optional[str], participants: List[int]) -> dict:
    return {
        "id": store.next_id(store.chats),
        "type": chat_type,
        "name": name,
        "participants": participants,
        "avatar": "",
        "createdAt": iso_now(),
    }


SAMPLE_USERS = (
    ("ali", "Ali Valiyev"),
    ("botir", "Botir Jo'rayev"),
    ("dilshod", "Dilshod Rahimov"),
)


def seed_sample_users(store: JsonStore) -> int:
    if store.users:
        return 0
    for username, name in SAMPLE_USERS:
        user = new_user(store, username, hash_password("123"), name)
        user["online"] = False
        store.users.append(user)
    store.flush()
    LOGGER.info("seeded %d sample users", len(SAMPLE_USERS))
    return len(SAMPLE_USERS)


def create_store() -> JsonStore:
    store = JsonStore(DATA_DIR)
    store.load()
    if SEED_SAMPLE_USERS:
        seed_sample_users(store)
    return store


def get_build_meta() -> Dict[str, str]:
    version = (os.environ.get("APP_VERSION") or os.environ.get("VERSION") or "unknown").strip() or "unknown"
    commit = (os.environ.get("APP_COMMIT") or os.environ.get("COMMIT_SHA") or "unknown").strip() or "unknown"
    return {"version": version, "commit": commit}


# =========================
# App
# =========================
@asynccontextmanager
async def _lifespan(app: FastAPI):
    app.state.store = create_store()
    yield


app = FastAPI(lifespan=_lifespan)


def error_response(status_code: int, message: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    # "error" is what the browser client reads; "detail" keeps FastAPI's shape
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={"error": message, "detail": message},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg") or "Invalid request"
    return error_response(400, f"{field}: {message}" if field else message)


@app.exception_handler(StorageError)
async def storage_error_handler(_request: Request, _exc: StorageError):
    return error_response(500, "Storage write failed")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(_request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        headers={"Retry-After": str(exc.retry_after_seconds)},
        content={
            "error": exc.message,
            "detail": exc.message,
            "code": exc.error,
            "retry_after_seconds": exc.retry_after_seconds,
        },
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, _exc: Exception):
    LOGGER.exception("unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Server error")


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started = time.perf_counter()
    user_id = extract_user_id_from_request(request)
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        LOGGER.info(
            json.dumps(
                {
                    "method": request.method,
                    "path": request.url.path,
                    "status": status_code,
                    "latency_ms": latency_ms,
                    "user_id": user_id,
                },
                ensure_ascii=False,
            )
        )


@app.get("/api/health")
def healthcheck():
    return {"ok": True, "ts": now_ts(), **get_build_meta()}


# =========================
# Schemas
# =========================
class RegisterIn(BaseModel):
    username: str = ""
    password: str = ""
    name: Optional[str] = None


class LoginIn(BaseModel):
    username: str = ""
    password: str = ""


class ProfileUpdateIn(BaseModel):
    name: Optional[str] = None
    avatar: Optional[str] = None


class GroupCreateIn(BaseModel):
    name: str = ""
    participants: List[int] = Field(default_factory=list)
    type: Literal["group", "channel"] = "group"


class PrivateChatIn(BaseModel):
    user_id: Optional[int] = Field(default=None, alias="userId")


class ChatUpdateIn(BaseModel):
    name: Optional[str] = None
    avatar: Optional[str] = None


class ParticipantIn(BaseModel):
    user_id: Optional[int] = Field(default=None, alias="userId")


class AttachmentIn(BaseModel):
    type: Literal["image", "audio", "video", "file"]
    data: str
    name: Optional[str] = None
    duration: Optional[float] = None


class MessageCreateIn(BaseModel):
    text: Optional[str] = ""
    attachment: Optional[AttachmentIn] = None
    reply_to: Optional[int] = Field(default=None, alias="replyTo")
    forwarded_from: Optional[int] = Field(default=None, alias="forwardedFrom")
    scheduled_for: Optional[datetime] = Field(default=None, alias="scheduledFor")


class MessageEditIn(BaseModel):
    text: Optional[str] = ""


class ReactionIn(BaseModel):
    emoji: Optional[str] = None
    reactions: Optional[Dict[str, List[int]]] = None


# =========================
# Auth API
# =========================
@app.post("/api/auth/register")
async def register(
    data: RegisterIn,
    request: Request,
    response: Response,
    store: JsonStore = Depends(get_store),
):
    check_auth_rate_limit(request, "register")
    username = (data.username or "").strip()
    password = data.password or ""

    if not username or not password:
        raise HTTPException(status_code=400, detail="Username and password are required")
    if not USERNAME_RE.match(username):
        raise HTTPException(status_code=400, detail="Username: 1-32 characters, no spaces.")
    if store.find_user_by_username(username):
        raise HTTPException(status_code=400, detail="Username already exists")

    password_hash = await run_in_threadpool(hash_password, password)
    # the name may have been taken by a concurrent request while hashing
    if store.find_user_by_username(username):
        raise HTTPException(status_code=400, detail="Username already exists")

    user = new_user(store, username, password_hash, (data.name or "").strip() or username)
    store.users.append(user)
    store.flush()
    LOGGER.info("user registered id=%s username=%s", user["id"], username)

    token = issue_session_token(user["id"])
    set_session_cookie(response, token)
    return {"user": public_user(user), "token": token}


@app.post("/api/auth/login")
async def login(
    data: LoginIn,
    request: Request,
    response: Response,
    store: JsonStore = Depends(get_store),
):
    check_auth_rate_limit(request, "login")
    username = (data.username or "").strip()
    if not username or not data.password:
        raise HTTPException(status_code=400, detail="Username and password are required")

    user = store.find_user_by_username(username)
    if not user or not await run_in_threadpool(verify_password, data.password, user.get("password") or ""):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    user["online"] = True
    user["lastSeen"] = iso_now()
    store.flush()

    token = issue_session_token(user["id"])
    set_session_cookie(response, token)
    return {"user": public_user(user), "token": token}


@app.post("/api/auth/logout")
async def logout(
    response: Response,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    user["online"] = False
    store.flush()
    clear_session_cookie(response)
    return {"success": True}


@app.get("/api/auth/me")
async def me(user: dict = Depends(get_current_user)):
    return {"user": public_user(user)}


# =========================
# Users API
# =========================
@app.get("/api/users")
async def list_users(
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    return [public_user(u) for u in store.users]


@app.put("/api/users/profile")
async def update_profile(
    data: ProfileUpdateIn,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    name = (data.name or "").strip()
    avatar = (data.avatar or "").strip()
    if name:
        user["name"] = name[:64]
    if avatar:
        user["avatar"] = avatar
    store.flush()
    return {"user": public_user(user)}


# =========================
# Chats API
# =========================
@app.get("/api/chats")
async def list_chats(
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    return [c for c in store.chats if is_member(c, user["id"])]


@app.post("/api/chats/group")
async def create_group_chat(
    data: GroupCreateIn,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Group name is required")

    participants = [user["id"]]
    for participant_id in data.participants:
        if participant_id in participants:
            continue
        require_user(store, participant_id)
        participants.append(participant_id)

    chat = new_chat(store, data.type, name[:64], participants)
    store.chats.append(chat)
    store.flush()
    LOGGER.info("chat created id=%s type=%s by=%s members=%d", chat["id"], chat["type"], user["id"], len(participants))
    return chat


@app.post("/api/chats/private")
async def get_or_create_private_chat(
    data: PrivateChatIn,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    other_id = data.user_id
    if other_id is None:
        raise HTTPException(status_code=400, detail="User ID is required")
    if other_id == user["id"]:
        raise HTTPException(status_code=400, detail="Cannot start a private chat with yourself")
    require_user(store, other_id)

    existing = find_private_chat(store, user["id"], other_id)
    if existing:
        return existing

    chat = new_chat(store, PRIVATE_CHAT, None, [user["id"], other_id])
    store.chats.append(chat)
    store.flush()
    LOGGER.info("private chat created id=%s between %s and %s", chat["id"], user["id"], other_id)
    return chat


@app.put("/api/chats/{chat_id}")
async def update_chat(
    chat_id: int,
    data: ChatUpdateIn,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    chat = require_chat(store, chat_id)
    require_member(chat, user["id"])

    name = None
    if data.name is not None:
        if chat.get("type") == PRIVATE_CHAT:
            raise HTTPException(status_code=400, detail="Private chats cannot be renamed")
        name = data.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Chat name cannot be empty")

    if name:
        chat["name"] = name[:64]
    if data.avatar is not None:
        chat["avatar"] = data.avatar.strip()
    store.flush()
    return chat


@app.delete("/api/chats/{chat_id}")
async def delete_chat(
    chat_id: int,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    chat = require_chat(store, chat_id)
    require_member(chat, user["id"])

    before = len(store.messages)
    store.chats = [c for c in store.chats if c.get("id") != chat_id]
    store.messages = [m for m in store.messages if m.get("chatId") != chat_id]
    store.flush()
    LOGGER.info("chat deleted id=%s by=%s messages_removed=%d", chat_id, user["id"], before - len(store.messages))
    return {"success": True}


@app.post("/api/chats/{chat_id}/users")
async def add_participant(
    chat_id: int,
    data: ParticipantIn,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    chat = require_chat(store, chat_id)
    require_member(chat, user["id"])
    if data.user_id is None:
        raise HTTPException(status_code=400, detail="User ID is required")
    if chat.get("type") == PRIVATE_CHAT:
        raise HTTPException(status_code=400, detail="Participants can only be changed in group chats")
    require_user(store, data.user_id)

    if not is_member(chat, data.user_id):
        chat["participants"].append(data.user_id)
        store.flush()
    return chat


@app.delete("/api/chats/{chat_id}/users/{user_id}")
async def remove_participant(
    chat_id: int,
    user_id: int,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    chat = require_chat(store, chat_id)
    require_member(chat, user["id"])
    if user_id == user["id"]:
        raise HTTPException(status_code=400, detail="Cannot remove yourself")
    if chat.get("type") == PRIVATE_CHAT:
        raise HTTPException(status_code=400, detail="Participants can only be changed in group chats")

    if is_member(chat, user_id):
        chat["participants"] = [p for p in chat["participants"] if p != user_id]
        store.flush()
    return chat


# =========================
# Messages API
# =========================
@app.get("/api/chats/{chat_id}/messages")
async def list_messages(
    chat_id: int,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    chat = require_chat(store, chat_id)
    require_member(chat, user["id"])

    rows = store.chat_messages(chat_id)
    if mark_seen(rows, user["id"]):
        store.flush()
    return rows


@app.post("/api/chats/{chat_id}/read")
async def mark_chat_read(
    chat_id: int,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    chat = require_chat(store, chat_id)
    require_member(chat, user["id"])

    updated = mark_seen(store.chat_messages(chat_id), user["id"])
    if updated:
        store.flush()
    return {"success": True, "updated": updated}


def build_attachment(attachment: Optional[AttachmentIn]) -> Optional[dict]:
    if attachment is None:
        return None
    data = (attachment.data or "").strip()
    if not data:
        raise HTTPException(status_code=400, detail="Attachment data is required")
    if len(data) > MAX_ATTACHMENT_BYTES:
        raise HTTPException(status_code=413, detail=f"Attachment too large (max {MAX_ATTACHMENT_MB}MB)")
    if attachment.duration is not None and attachment.duration < 0:
        raise HTTPException(status_code=400, detail="Attachment duration must not be negative")

    payload: Dict[str, Any] = {"type": attachment.type, "data": data}
    if attachment.name:
        payload["name"] = attachment.name.strip()[:255]
    if attachment.duration is not None:
        payload["duration"] = attachment.duration
    return payload


@app.post("/api/chats/{chat_id}/messages")
async def send_message(
    chat_id: int,
    data: MessageCreateIn,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    chat = require_chat(store, chat_id)
    require_member(chat, user["id"])

    text = (data.text or "").strip()
    attachment = build_attachment(data.attachment)
    if not text and attachment is None:
        raise HTTPException(status_code=400, detail="Message text or attachment is required")
    check_rate_limit(f"send:{user['id']}", RATE_LIMIT_MAX_SEND)

    # replyTo / forwardedFrom are stored as given; clients tolerate missing targets
    message = {
        "id": store.next_id(store.messages),
        "chatId": chat_id,
        "senderId": user["id"],
        "text": text,
        "attachment": attachment,
        "status": "sent",
        "timestamp": iso_now(),
        "editedAt": None,
        "replyTo": data.reply_to,
        "forwardedFrom": data.forwarded_from,
        "scheduledFor": format_iso(data.scheduled_for) if data.scheduled_for else None,
        "pinned": False,
        "reactions": {},
    }
    store.messages.append(message)
    store.flush()
    return message


@app.put("/api/messages/{message_id}")
async def edit_message(
    message_id: int,
    data: MessageEditIn,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    message = require_message(store, message_id)
    require_sender(message, user["id"], "edit")

    text = (data.text or "").strip()
    if not text and not message.get("attachment"):
        raise HTTPException(status_code=400, detail="Message text is required")

    message["text"] = text
    message["editedAt"] = iso_now()
    store.flush()
    return message


@app.delete("/api/messages/{message_id}")
async def delete_message(
    message_id: int,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    message = require_message(store, message_id)
    require_sender(message, user["id"], "delete")

    store.messages = [m for m in store.messages if m.get("id") != message_id]
    store.flush()
    return {"success": True}


@app.post("/api/messages/{message_id}/reactions")
async def react_to_message(
    message_id: int,
    data: ReactionIn,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    message = require_message(store, message_id)
    chat = require_chat(store, message.get("chatId"))
    require_member(chat, user["id"])

    if data.emoji is not None:
        emoji = normalize_emoji(data.emoji)
        if not emoji:
            raise HTTPException(status_code=400, detail="emoji required")
        reactions = toggle_reaction(message, emoji, user["id"])
    elif data.reactions is not None:
        reactions = merge_reactions(message, data.reactions, user["id"])
    else:
        raise HTTPException(status_code=400, detail="emoji or reactions required")

    store.flush()
    return reactions


@app.post("/api/messages/{message_id}/pin")
async def pin(
    message_id: int,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    message = require_message(store, message_id)
    require_sender(message, user["id"], "pin")

    pin_message(store, message)
    store.flush()
    return {"success": True, "messageId": message_id, "pinned": True}


@app.post("/api/messages/{message_id}/unpin")
async def unpin(
    message_id: int,
    user: dict = Depends(get_current_user),
    store: JsonStore = Depends(get_store),
):
    message = require_message(store, message_id)
    require_sender(message, user["id"], "unpin")

    message["pinned"] = False
    store.flush()
    return {"success": True, "messageId": message_id, "pinned": False}


# =========================
# Upload media (image/video/audio/file)
# =========================
def attachment_kind_from_mime(mime: str) -> str:
    mime = (mime or "").lower().strip()
    for kind in ("image", "video", "audio"):
        if mime.startswith(f"{kind}/"):
            return kind
    return "file"


def cloudinary_resource_type(kind: str) -> str:
    # Cloudinary treats audio as "video" resource in most cases.
    if kind == "image":
        return "image"
    if kind in ("video", "audio"):
        return "video"
    return "raw"


@app.post("/api/upload")
async def upload_media(
    file: UploadFile = File(...),
    user: dict = Depends(get_current_user),
):
    if not CLOUDINARY_CONFIGURED:
        raise HTTPException(status_code=503, detail="Media uploads are not configured")

    kind = attachment_kind_from_mime(file.content_type or "")
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="File is empty")
    if len(data) > MAX_ATTACHMENT_BYTES:
        raise HTTPException(status_code=413, detail=f"File too large (max {MAX_ATTACHMENT_MB}MB)")
    check_rate_limit(f"send:{user['id']}", RATE_LIMIT_MAX_SEND)

    try:
        res = cloudinary.uploader.upload(
            data,
            folder="messenger/attachments",
            resource_type=cloudinary_resource_type(kind),
            use_filename=True,
            unique_filename=True,
        )
        url = res.get("secure_url") or res.get("url")
    except Exception as e:
        LOGGER.exception("cloudinary upload failed for user_id=%s", user["id"])
        raise HTTPException(status_code=500, detail=f"Cloudinary upload failed: {e}")

    return {"url": url, "type": kind, "name": (file.filename or "").strip()[:255]}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "3000")))
