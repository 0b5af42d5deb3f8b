from __future__ import annotations

import os
import re
import time
import json
import math
import logging
import hmac
import hashlib
import secrets
from contextlib import asynccontextmanager
from typing import Annotated, Any, Dict, List, Literal, NamedTuple, Optional, Set, Tuple, Union

import psycopg
from psycopg.rows import dict_row

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader
import cloudinary.utils

from fastapi import (
    APIRouter,
    Body,
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    Query,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, TypeAdapter, ValidationError


LOGGER = logging.getLogger("chatroom.api")


# =========================
# Config
# =========================
JWT_SECRET = (os.environ.get("JWT_SECRET") or "").strip()
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET env is required")
if len(JWT_SECRET) < 16:
    raise RuntimeError("JWT_SECRET must be at least 16 characters")
JWT_TTL_SECONDS = int(os.environ.get("JWT_TTL_SECONDS", str(60 * 60 * 24)))  # 24h

DATABASE_URL = (os.environ.get("DATABASE_URL") or "").strip()
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL env is required")

# Normalize for psycopg
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = "postgresql://" + DATABASE_URL[len("postgres://"):]

API_PREFIX = (os.environ.get("API_PREFIX", "/api/v1") or "").strip().rstrip("/")

MAX_UPLOAD_MB = 10
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * 1024 * 1024

ALLOWED_IMAGE_MIME = ("image/jpeg", "image/png", "image/gif")
ALLOWED_FILE_MIME = (
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/json",
    "text/xml",
    "application/zip",
    "text/csv",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
)

MESSAGE_TYPES = ("normal", "noti", "file", "image")
DEFAULT_PAGE = 1
DEFAULT_PAGE_LIMIT = 20
PG_BIGINT_MAX = 2**63 - 1

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

AUTH_GROUPS = ("user", "chat", "message", "ws")


def parse_cors_origins(value: Optional[str]) -> List[str]:
    if value is None or not value.strip():
        return ["*"]

    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    if not origins:
        return ["*"]

    # Keep order while removing accidental duplicates from CSV input.
    return list(dict.fromkeys(origins))


def parse_auth_groups(value: Optional[str]) -> Set[str]:
    """
    AUTH_REQUIRED=user,chat turns the bearer check on for those route groups.
    Empty (the default) leaves every group open.
    """
    groups = {g.strip().lower() for g in (value or "").split(",") if g.strip()}
    unknown = groups - set(AUTH_GROUPS)
    if unknown:
        raise RuntimeError(f"AUTH_REQUIRED has unknown groups: {', '.join(sorted(unknown))}")
    return groups


CORS_ORIGINS = parse_cors_origins(os.environ.get("CORS_ORIGINS"))
AUTH_REQUIRED = parse_auth_groups(os.environ.get("AUTH_REQUIRED"))

# =========================
# Cloudinary config
# =========================
CLOUDINARY_CLOUD_NAME = (os.environ.get("CLOUDINARY_CLOUD_NAME") or "").strip()
CLOUDINARY_API_KEY = (os.environ.get("CLOUDINARY_API_KEY") or "").strip()
CLOUDINARY_API_SECRET = (os.environ.get("CLOUDINARY_API_SECRET") or "").strip()
CLOUDINARY_FOLDER = (os.environ.get("CLOUDINARY_FOLDER") or "chatroom").strip()

if not (CLOUDINARY_CLOUD_NAME and CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET):
    raise RuntimeError(
        "Cloudinary env vars required: CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY, CLOUDINARY_API_SECRET"
    )

cloudinary.config(
    cloud_name=CLOUDINARY_CLOUD_NAME,
    api_key=CLOUDINARY_API_KEY,
    api_secret=CLOUDINARY_API_SECRET,
    secure=True,
)


# =========================
# Errors
# =========================
class ChatError(Exception):
    status_code = 500
    error = "internal"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidPayload(ChatError):
    status_code = 400
    error = "invalid_payload"
    default_message = "Invalid payload"


class NotFound(ChatError):
    status_code = 404
    error = "not_found"
    default_message = "Not found"


class Unauthorized(ChatError):
    status_code = 401
    error = "unauthorized"
    default_message = "Unauthorized"


class UpstreamError(ChatError):
    status_code = 502
    error = "upstream_error"
    default_message = "Storage upload failed"


# =========================
# DB helpers
# =========================
def db():
    # new connection per action (simple + safe)
    return psycopg.connect(DATABASE_URL, row_factory=dict_row)


def init_db() -> None:
    """
    Safe "migrations" via CREATE ... IF NOT EXISTS.
    """
    with db() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    password TEXT NOT NULL,
                    is_online BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at BIGINT NOT NULL,
                    deleted_at BIGINT
                );
                """
            )
            # one active account per email; deleted rows keep theirs
            cur.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_users_active_email ON users(email) WHERE deleted_at IS NULL;"
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS user_friends (
                    user_id TEXT NOT NULL,
                    friend_id TEXT NOT NULL,
                    created_at BIGINT NOT NULL,
                    PRIMARY KEY(user_id, friend_id)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS chats (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    is_group BOOLEAN NOT NULL DEFAULT FALSE,
                    group_name TEXT,
                    is_strict BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at BIGINT NOT NULL,
                    deleted_at BIGINT
                );
                """
            )
            # seq keeps members in insertion order
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_members (
                    seq BIGSERIAL,
                    chat_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    joined_at BIGINT NOT NULL,
                    PRIMARY KEY(chat_id, user_id)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id BIGSERIAL PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'normal',
                    created_at BIGINT NOT NULL,
                    deleted_at BIGINT
                );
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_chat_id ON messages(chat_id, id);"
            )
        conn.commit()


USER_COLUMNS = "id, name, email, password, is_online, created_at, deleted_at"
CHAT_COLUMNS = "id, owner_id, is_group, group_name, is_strict, created_at, deleted_at"
MESSAGE_COLUMNS = "id, chat_id, sender_id, content, type, created_at, deleted_at"


class Store:
    """
    Every read and write of users, chats and messages goes through here.

    Read methods only ever return active rows (deleted_at IS NULL), so a
    soft-deleted user, chat or message cannot leak into a response or a
    broadcast. Methods that target a single row return None when it is
    missing or soft-deleted.
    """

    # ---- users ----
    def _attach_friends(self, cur, rows: List[dict]) -> List[dict]:
        if not rows:
            return rows
        cur.execute(
            """
            SELECT f.user_id, f.friend_id
            FROM user_friends f
            JOIN users u ON u.id = f.friend_id
            WHERE f.user_id = ANY(%s) AND u.deleted_at IS NULL
            ORDER BY f.created_at ASC
            """,
            ([r["id"] for r in rows],),
        )
        by_user: Dict[str, List[str]] = {}
        for fr in cur.fetchall():
            by_user.setdefault(fr["user_id"], []).append(fr["friend_id"])
        for r in rows:
            r["friend_ids"] = by_user.get(r["id"], [])
        return rows

    def _one_user(self, query: str, params: tuple, commit: bool = False) -> Optional[dict]:
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
                if row:
                    self._attach_friends(cur, [row])
            if commit:
                conn.commit()
        return row

    def create_user(self, name: str, email: str, password_hash: str) -> dict:
        user = self._one_user(
            f"INSERT INTO users(id, name, email, password, is_online, created_at) VALUES (%s,%s,%s,%s,FALSE,%s) RETURNING {USER_COLUMNS}",
            (make_id("u_"), name, email, password_hash, now_ts()),
            commit=True,
        )
        return user

    def find_user(self, user_id: str) -> Optional[dict]:
        return self._one_user(
            f"SELECT {USER_COLUMNS} FROM users WHERE id=%s AND deleted_at IS NULL",
            (user_id,),
        )

    def find_user_by_email(self, email: str) -> Optional[dict]:
        return self._one_user(
            f"SELECT {USER_COLUMNS} FROM users WHERE email=%s AND deleted_at IS NULL",
            (email,),
        )

    def list_users(self) -> List[dict]:
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {USER_COLUMNS} FROM users WHERE deleted_at IS NULL ORDER BY created_at ASC")
                rows = cur.fetchall()
                self._attach_friends(cur, rows)
        return rows

    def update_user_name(self, user_id: str, name: str) -> Optional[dict]:
        return self._one_user(
            f"UPDATE users SET name=%s WHERE id=%s AND deleted_at IS NULL RETURNING {USER_COLUMNS}",
            (name, user_id),
            commit=True,
        )

    def toggle_user_online(self, user_id: str) -> Optional[dict]:
        return self._one_user(
            f"UPDATE users SET is_online = NOT is_online WHERE id=%s AND deleted_at IS NULL RETURNING {USER_COLUMNS}",
            (user_id,),
            commit=True,
        )

    def soft_delete_user(self, user_id: str) -> Optional[dict]:
        return self._one_user(
            f"UPDATE users SET deleted_at=%s WHERE id=%s AND deleted_at IS NULL RETURNING {USER_COLUMNS}",
            (now_ts(), user_id),
            commit=True,
        )

    def list_friends(self, user_id: str) -> List[dict]:
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT u.id, u.name, u.email
                    FROM user_friends f
                    JOIN users u ON u.id = f.friend_id
                    WHERE f.user_id=%s AND u.deleted_at IS NULL
                    ORDER BY f.created_at ASC
                    """,
                    (user_id,),
                )
                return cur.fetchall()

    def add_friendship(self, user_id: str, friend_id: str) -> None:
        # both directions commit together
        now = now_ts()
        with db() as conn:
            with conn.cursor() as cur:
                for a, b in ((user_id, friend_id), (friend_id, user_id)):
                    cur.execute(
                        """
                        INSERT INTO user_friends(user_id, friend_id, created_at)
                        VALUES (%s,%s,%s)
                        ON CONFLICT (user_id, friend_id) DO NOTHING
                        """,
                        (a, b, now),
                    )
            conn.commit()

    def remove_friendship(self, user_id: str, friend_id: str) -> None:
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM user_friends WHERE (user_id=%s AND friend_id=%s) OR (user_id=%s AND friend_id=%s)",
                    (user_id, friend_id, friend_id, user_id),
                )
            conn.commit()

    # ---- chats ----
    def _attach_members(self, cur, rows: List[dict]) -> List[dict]:
        if not rows:
            return rows
        cur.execute(
            "SELECT chat_id, user_id FROM chat_members WHERE chat_id = ANY(%s) ORDER BY seq ASC",
            ([r["id"] for r in rows],),
        )
        by_chat: Dict[str, List[str]] = {}
        for m in cur.fetchall():
            by_chat.setdefault(m["chat_id"], []).append(m["user_id"])
        for r in rows:
            r["members"] = by_chat.get(r["id"], [])
        return rows

    def _one_chat(self, query: str, params: tuple, commit: bool = False) -> Optional[dict]:
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
                if row:
                    self._attach_members(cur, [row])
            if commit:
                conn.commit()
        return row

    def create_chat(self, owner_id: str, member_ids: List[str], is_group: bool, group_name: Optional[str]) -> dict:
        chat_id = make_id("c_")
        now = now_ts()
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO chats(id, owner_id, is_group, group_name, is_strict, created_at)
                    VALUES (%s,%s,%s,%s,FALSE,%s)
                    RETURNING {CHAT_COLUMNS}
                    """,
                    (chat_id, owner_id, is_group, group_name, now),
                )
                chat = cur.fetchone()
                for member_id in member_ids:
                    cur.execute(
                        """
                        INSERT INTO chat_members(chat_id, user_id, joined_at)
                        VALUES (%s,%s,%s)
                        ON CONFLICT (chat_id, user_id) DO NOTHING
                        """,
                        (chat_id, member_id, now),
                    )
                self._attach_members(cur, [chat])
            conn.commit()
        return chat

    def find_chat(self, chat_id: str) -> Optional[dict]:
        return self._one_chat(
            f"SELECT {CHAT_COLUMNS} FROM chats WHERE id=%s AND deleted_at IS NULL",
            (chat_id,),
        )

    def list_chats_for_user(self, user_id: str) -> List[dict]:
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT c.id, c.owner_id, c.is_group, c.group_name, c.is_strict, c.created_at, c.deleted_at
                    FROM chats c
                    JOIN chat_members m ON m.chat_id = c.id
                    WHERE m.user_id=%s AND c.deleted_at IS NULL
                    ORDER BY c.created_at DESC
                    """,
                    (user_id,),
                )
                rows = cur.fetchall()
                self._attach_members(cur, rows)
        return rows

    def add_chat_member(self, chat_id: str, user_id: str) -> None:
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO chat_members(chat_id, user_id, joined_at)
                    VALUES (%s,%s,%s)
                    ON CONFLICT (chat_id, user_id) DO NOTHING
                    """,
                    (chat_id, user_id, now_ts()),
                )
            conn.commit()

    def remove_chat_member(self, chat_id: str, user_id: str) -> None:
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM chat_members WHERE chat_id=%s AND user_id=%s", (chat_id, user_id))
            conn.commit()

    def rename_chat(self, chat_id: str, name: str) -> Optional[dict]:
        return self._one_chat(
            f"UPDATE chats SET group_name=%s WHERE id=%s AND deleted_at IS NULL RETURNING {CHAT_COLUMNS}",
            (name, chat_id),
            commit=True,
        )

    def toggle_chat_strict(self, chat_id: str) -> Optional[dict]:
        return self._one_chat(
            f"UPDATE chats SET is_strict = NOT is_strict WHERE id=%s AND deleted_at IS NULL RETURNING {CHAT_COLUMNS}",
            (chat_id,),
            commit=True,
        )

    def soft_delete_chat(self, chat_id: str) -> bool:
        """Mark the chat and its messages deleted. False if it was already gone."""
        now = now_ts()
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE chats SET deleted_at=%s WHERE id=%s AND deleted_at IS NULL",
                    (now, chat_id),
                )
                deleted = cur.rowcount > 0
                if deleted:
                    cur.execute(
                        "UPDATE messages SET deleted_at=%s WHERE chat_id=%s AND deleted_at IS NULL",
                        (now, chat_id),
                    )
            conn.commit()
        return deleted

    # ---- messages ----
    def create_message(self, chat_id: str, sender_id: str, content: str, message_type: str) -> dict:
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"unknown message type: {message_type}")
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO messages(chat_id, sender_id, content, type, created_at)
                    VALUES (%s,%s,%s,%s,%s)
                    RETURNING {MESSAGE_COLUMNS}
                    """,
                    (chat_id, sender_id, content, message_type, now_ts()),
                )
                row = cur.fetchone()
            conn.commit()
        return row

    def find_message(self, message_id: int) -> Optional[dict]:
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id=%s AND deleted_at IS NULL",
                    (message_id,),
                )
                return cur.fetchone()

    def list_messages(self) -> List[dict]:
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE deleted_at IS NULL ORDER BY id ASC")
                return cur.fetchall()

    def page_chat_messages(self, chat_id: str, skip: int, limit: int) -> List[dict]:
        """Newest first."""
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {MESSAGE_COLUMNS}
                    FROM messages
                    WHERE chat_id=%s AND deleted_at IS NULL
                    ORDER BY id DESC
                    OFFSET %s
                    LIMIT %s
                    """,
                    (chat_id, skip, limit),
                )
                return cur.fetchall()

    def count_chat_messages(self, chat_id: str) -> int:
        with db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(*) AS n FROM messages WHERE chat_id=%s AND deleted_at IS NULL",
                    (chat_id,),
                )
                return int(cur.fetchone()["n"])


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
    import base64
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64urldecode(data: str) -> bytes:
    import base64
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
    if not token.isascii():
        raise Unauthorized("Invalid token")
    try:
        header_b64, payload_b64, sig_b64 = token.split(".", 2)
    except ValueError:
        raise Unauthorized("Invalid token")

    msg = f"{header_b64}.{payload_b64}".encode("ascii")
    expected = hmac.new(JWT_SECRET.encode(), msg, hashlib.sha256).digest()
    if not hmac.compare_digest(b64url(expected), sig_b64):
        raise Unauthorized("Invalid token")

    try:
        payload = json.loads(b64urldecode(payload_b64))
    except ValueError:
        raise Unauthorized("Invalid token")
    if not isinstance(payload, dict):
        raise Unauthorized("Invalid token")
    if int(payload.get("exp", 0)) < now_ts():
        raise Unauthorized("Token expired")
    return payload


def issue_token(user_id: str, email: str) -> str:
    now = now_ts()
    return jwt_sign({"sub": user_id, "email": email, "iat": now, "exp": now + JWT_TTL_SECONDS})


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


def require_auth(group: str):
    """
    Dependency factory for one route group. When the group is listed in
    AUTH_REQUIRED the bearer token must verify, and its claims end up on
    request.state.user; otherwise requests pass through untouched.
    """
    def check(request: Request, authorization: Optional[str] = Header(default=None)) -> Optional[dict]:
        if group not in AUTH_REQUIRED:
            return None
        token = _extract_bearer(authorization)
        if not token:
            raise Unauthorized("No token provided")
        claims = jwt_verify(token)
        request.state.user = claims
        return claims

    return check


# =========================
# Misc helpers
# =========================
def make_id(prefix: str = "") -> str:
    return prefix + secrets.token_urlsafe(10)


def now_ts() -> int:
    return int(time.time())


def extract_user_id_from_request(request: Request) -> Optional[str]:
    token = _extract_bearer(request.headers.get("authorization"))
    if not token:
        return None
    try:
        return str(jwt_verify(token).get("sub") or "").strip() or None
    except Unauthorized:
        return None


def get_build_meta() -> Dict[str, str]:
    version = (os.environ.get("APP_VERSION") or os.environ.get("VERSION") or "unknown").strip() or "unknown"
    commit = (os.environ.get("APP_COMMIT") or os.environ.get("COMMIT_SHA") or "unknown").strip() or "unknown"
    return {"version": version, "commit": commit}


def public_user(row: dict) -> dict:
    return {k: v for k, v in row.items() if k != "password"}


def chat_snapshot(chat: dict) -> dict:
    return {
        "id": chat["id"],
        "owner_id": chat["owner_id"],
        "members": list(chat["members"]),
        "is_group": chat["is_group"],
        "group_name": chat["group_name"],
        "is_strict": chat["is_strict"],
        "created_at": chat["created_at"],
    }


def _positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def normalize_page_args(page: Any, limit: Any) -> Tuple[int, int]:
    return _positive_int(page, DEFAULT_PAGE), _positive_int(limit, DEFAULT_PAGE_LIMIT)


def build_upload_key(filename: Optional[str]) -> str:
    name = os.path.basename((filename or "").strip())
    stem, ext = os.path.splitext(name)
    stem = re.sub(r"[^A-Za-z0-9_.-]+", "_", stem).strip("_") or "upload"
    return f"{stem}-{int(time.time() * 1000)}{ext.lower()}"


# =========================
# Blob uploads (Cloudinary)
# =========================
class UploadProfile(NamedTuple):
    kind: str
    max_bytes: int
    allowed_mime: Tuple[str, ...]
    resource_type: str
    attachment: bool


IMAGE_UPLOAD = UploadProfile("image", MAX_UPLOAD_BYTES, ALLOWED_IMAGE_MIME, "image", False)
FILE_UPLOAD = UploadProfile("file", MAX_UPLOAD_BYTES, ALLOWED_FILE_MIME, "raw", True)


class BlobUploader:
    def __init__(self, folder: str):
        self.folder = folder

    def validate(
        self,
        profile: UploadProfile,
        data: Optional[bytes],
        content_type: str,
        key: str,
        size: Optional[int] = None,
    ) -> None:
        label = profile.kind.capitalize()
        if not data:
            raise InvalidPayload(f"No {profile.kind} provided")
        if not key:
            raise InvalidPayload(f"{label} key is required")
        if max(len(data), size or 0) > profile.max_bytes:
            raise InvalidPayload(f"{label} size exceeds limit of {profile.max_bytes // (1024 * 1024)} MB")
        if content_type not in profile.allowed_mime:
            raise InvalidPayload(
                f"Invalid {profile.kind} type: {content_type}. Allowed types: {', '.join(profile.allowed_mime)}"
            )

    def upload(
        self,
        profile: UploadProfile,
        data: Optional[bytes],
        content_type: str,
        key: str,
        size: Optional[int] = None,
    ) -> Dict[str, str]:
        """
        Validate, then push to Cloudinary with public delivery.
        Files come back as an attachment URL so browsers download them
        instead of rendering inline. Returns {"url", "key"}.
        """
        self.validate(profile, data, content_type, key, size)

        # Cloudinary appends the format itself for images.
        public_id = key if profile.resource_type == "raw" else os.path.splitext(key)[0]
        try:
            res = cloudinary.uploader.upload(
                data,
                folder=self.folder,
                public_id=public_id,
                resource_type=profile.resource_type,
                type="upload",
                overwrite=False,
            )
        except cloudinary.exceptions.NotFound as e:
            raise UpstreamError("Storage bucket does not exist") from e
        except (cloudinary.exceptions.AuthorizationRequired, cloudinary.exceptions.NotAllowed) as e:
            raise UpstreamError("Insufficient permissions to upload to storage") from e
        except cloudinary.exceptions.Error as e:
            raise UpstreamError(f"Failed to upload {profile.kind}: {e}") from e

        url = res.get("secure_url") or res.get("url")
        if profile.attachment:
            url, _ = cloudinary.utils.cloudinary_url(
                res["public_id"],
                resource_type=profile.resource_type,
                type="upload",
                flags="attachment",
                secure=True,
            )
        return {"url": url, "key": key}


# =========================
# Realtime (rooms per chat / per user)
# =========================
class RoomRegistry:
    """
    Live sessions grouped into rooms. A room id is either a chat id or a
    user id (per-user notification room). Process-local; starts empty.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[WebSocket]] = {}
        self._joined: Dict[WebSocket, Set[str]] = {}

    def join(self, room: str, ws: WebSocket) -> None:
        self._rooms.setdefault(room, set()).add(ws)
        self._joined.setdefault(ws, set()).add(room)

    def leave(self, room: str, ws: WebSocket) -> None:
        if room in self._rooms:
            self._rooms[room].discard(ws)
            if not self._rooms[room]:
                self._rooms.pop(room, None)
        if ws in self._joined:
            self._joined[ws].discard(room)
            if not self._joined[ws]:
                self._joined.pop(ws, None)

    def drop(self, ws: WebSocket) -> None:
        for room in list(self._joined.get(ws, ())):
            self.leave(room, ws)

    def sessions(self, room: str) -> List[WebSocket]:
        return list(self._rooms.get(room, ()))

    def rooms_of(self, ws: WebSocket) -> Set[str]:
        return set(self._joined.get(ws, ()))

    async def send(self, ws: WebSocket, event: str, data: Any) -> None:
        try:
            await ws.send_text(json.dumps({"type": event, "data": data}))
        except Exception:
            # no retry; the session is dropped on its own disconnect
            LOGGER.debug("send failed event=%s session=%s", event, id(ws))

    async def emit(self, room: str, event: str, data: Any) -> None:
        for ws in self.sessions(room):
            await self.send(ws, event, data)


class JoinChatEvent(BaseModel):
    type: Literal["joinChat"]
    chat_id: str = Field(min_length=1)


class SubscribeToUserEvent(BaseModel):
    type: Literal["subscribeToUser"]
    user_id: str = Field(min_length=1)


class SendMessageEvent(BaseModel):
    type: Literal["sendMessage"]
    chat_id: str = Field(min_length=1)
    sender_id: str = Field(min_length=1)
    content: str = Field(min_length=1)


class MemberNotiEvent(BaseModel):
    type: Literal["sendNotiAdjustMember"]
    chat_id: str = Field(min_length=1)
    sender_id: str = Field(min_length=1)
    member_id: str = Field(min_length=1)
    is_add: bool = Field(alias="isAdd")


class GroupNameNotiEvent(BaseModel):
    type: Literal["sendNotiUpdateGroupName"]
    chat_id: str = Field(min_length=1)
    sender_id: str = Field(min_length=1)
    group_name: str = Field(alias="groupName", min_length=1)


class TypingEvent(BaseModel):
    type: Literal["typing", "stopTyping"]
    chat_id: str = Field(min_length=1)
    sender_id: str = Field(min_length=1)


class AdjustStrictEvent(BaseModel):
    type: Literal["adjustStrict"]
    chat_id: str = Field(min_length=1)


InboundEvent = Annotated[
    Union[
        JoinChatEvent,
        SubscribeToUserEvent,
        SendMessageEvent,
        MemberNotiEvent,
        GroupNameNotiEvent,
        TypingEvent,
        AdjustStrictEvent,
    ],
    Field(discriminator="type"),
]
INBOUND_EVENTS = TypeAdapter(InboundEvent)


class ChatRelay:
    """
    Socket side of the chat service. Each inbound frame is parsed into one
    event model, then runs validate -> persist -> broadcast.

    Domain failures come back to the calling session only, as an `error`
    event carrying the short message; anything unexpected is logged and
    reported as "Internal server error". The connection stays open either way.
    """

    def __init__(self, store: Store, rooms: Optional[RoomRegistry] = None):
        self.store = store
        self.rooms = rooms or RoomRegistry()
        self._handlers = {
            "joinChat": self.join_chat,
            "subscribeToUser": self.subscribe_user,
            "sendMessage": self.send_message,
            "sendNotiAdjustMember": self.notify_member_change,
            "sendNotiUpdateGroupName": self.notify_group_rename,
            "typing": self.typing,
            "stopTyping": self.typing,
            "adjustStrict": self.toggle_strict,
        }

    async def dispatch(self, ws: WebSocket, raw: Union[str, bytes]) -> None:
        try:
            try:
                event = INBOUND_EVENTS.validate_json(raw)
            except ValidationError:
                raise InvalidPayload() from None
            await self._handlers[event.type](ws, event)
        except ChatError as exc:
            await self.rooms.send(ws, "error", exc.message)
        except Exception:
            LOGGER.exception("socket event failed session=%s", id(ws))
            await self.rooms.send(ws, "error", "Internal server error")

    def active_chat(self, chat_id: str) -> dict:
        chat = self.store.find_chat(chat_id)
        if not chat:
            raise NotFound("Chat not found")
        return chat

    async def post_message(self, chat_id: str, sender_id: str, content: str, message_type: str) -> dict:
        message = self.store.create_message(chat_id, sender_id, content, message_type)
        await self.rooms.emit(chat_id, "newMessage", message)
        return message

    # ---- inbound events ----
    async def join_chat(self, ws: WebSocket, event: JoinChatEvent) -> None:
        self.active_chat(event.chat_id)
        self.rooms.join(event.chat_id, ws)
        await self.rooms.send(ws, "joinedChat", event.chat_id)

    async def subscribe_user(self, ws: WebSocket, event: SubscribeToUserEvent) -> None:
        self.rooms.join(event.user_id, ws)
        await self.rooms.send(ws, "user subscribed", event.user_id)

    async def send_message(self, ws: WebSocket, event: SendMessageEvent) -> None:
        chat = self.active_chat(event.chat_id)
        if event.sender_id not in chat["members"]:
            raise Unauthorized()
        await self.post_message(event.chat_id, event.sender_id, event.content, "normal")

    async def notify_member_change(self, ws: WebSocket, event: MemberNotiEvent) -> None:
        self.active_chat(event.chat_id)
        member = self.store.find_user(event.member_id)
        if not member:
            raise NotFound("User not found")
        action = "added to" if event.is_add else "removed from"
        await self.post_message(event.chat_id, event.sender_id, f"{member['name']} was {action} group", "noti")

    async def notify_group_rename(self, ws: WebSocket, event: GroupNameNotiEvent) -> None:
        self.active_chat(event.chat_id)
        content = f"Group name was changed to {event.group_name}"
        await self.post_message(event.chat_id, event.sender_id, content, "noti")

    async def typing(self, ws: WebSocket, event: TypingEvent) -> None:
        self.active_chat(event.chat_id)
        await self.rooms.emit(event.chat_id, event.type, {"sender_id": event.sender_id})

    async def toggle_strict(self, ws: WebSocket, event: AdjustStrictEvent) -> None:
        chat = self.store.toggle_chat_strict(event.chat_id)
        if not chat:
            raise NotFound("Chat not found")
        await self.rooms.emit(event.chat_id, "adjustStrict", {"is_strict": chat["is_strict"]})
        content = f"Group strict mode was turned {'on' if chat['is_strict'] else 'off'}"
        await self.post_message(event.chat_id, chat["owner_id"], content, "noti")

    # ---- HTTP-side state changes ----
    async def announce_chat_created(self, chat: dict) -> None:
        snapshot = chat_snapshot(chat)
        for member_id in chat["members"]:
            await self.rooms.emit(member_id, "chatCreated", snapshot)

    async def announce_chat_renamed(self, chat: dict) -> None:
        snapshot = chat_snapshot(chat)
        for member_id in chat["members"]:
            await self.rooms.emit(member_id, "chatCreated", snapshot)
        await self.rooms.emit(chat["id"], "chatUpdated", snapshot)

    async def announce_chat_deleted(self, chat_id: str) -> None:
        # chat room only; members' own rooms are not told
        await self.rooms.emit(chat_id, "chatUpdated", None)


store = Store()
relay = ChatRelay(store)
uploader = BlobUploader(CLOUDINARY_FOLDER)


# =========================
# App
# =========================
@asynccontextmanager
async def _lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="chatroom", lifespan=_lifespan)


@app.exception_handler(ChatError)
async def chat_error_handler(_request: Request, exc: ChatError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.error},
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
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
class CreateUserIn(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class LoginUserIn(BaseModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class UpdateUserIn(BaseModel):
    name: Optional[str] = None


class FriendIn(BaseModel):
    friend_id: str = Field(min_length=1)


class ChatCreateIn(BaseModel):
    members: List[str] = Field(min_length=1)
    is_group: bool = False
    groupName: Optional[str] = None


class ChatRenameIn(BaseModel):
    name: str = Field(min_length=1)


def require_user(user_id: str) -> dict:
    user = store.find_user(user_id)
    if not user:
        raise NotFound("User not found")
    return user


def require_chat(chat_id: str) -> dict:
    chat = store.find_chat(chat_id)
    if not chat:
        raise NotFound("Chat not found")
    return chat


# signup and login stay open so a client can obtain its first token
accounts = APIRouter(prefix="/user", tags=["User"])
users = APIRouter(prefix="/user", tags=["User"], dependencies=[Depends(require_auth("user"))])
chats = APIRouter(prefix="/chat", tags=["Chat"], dependencies=[Depends(require_auth("chat"))])
messages = APIRouter(prefix="/message", tags=["Message"], dependencies=[Depends(require_auth("message"))])


# =========================
# Users API
# =========================
@accounts.post("")
def create_user(data: CreateUserIn):
    email = data.email.strip().lower()
    if not EMAIL_RE.match(email):
        raise InvalidPayload("email must be an email")

    existing = store.find_user_by_email(email)
    if existing:
        return {"user": public_user(existing)}

    try:
        user = store.create_user(data.name.strip(), email, hash_password(data.password))
    except psycopg.errors.UniqueViolation:
        # lost a race with a concurrent signup for the same email
        user = store.find_user_by_email(email)
        if not user:
            raise
    return {"user": public_user(user)}


@accounts.post("/login")
def login(data: LoginUserIn):
    """
    Answers 200 either way: {"user_id"} on success, {"message"} otherwise.
    An access_token rides along once any route group requires auth.
    """
    user = store.find_user_by_email(data.email.strip().lower())
    if not user:
        return {"message": "User not found"}
    if not verify_password(data.password, user["password"]):
        return {"message": "Password is incorrect"}
    out = {"user_id": user["id"]}
    if AUTH_REQUIRED:
        out["access_token"] = issue_token(user["id"], user["email"])
    return out


@users.get("")
def list_users():
    return [public_user(u) for u in store.list_users()]


@users.get("/{user_id}/friends")
def get_friends(user_id: str, searchText: str = Query(default="")):
    require_user(user_id)
    needle = (searchText or "").strip().lower()
    return [f for f in store.list_friends(user_id) if not needle or needle in f["email"].lower()]


@users.get("/{user_id}")
def get_user(user_id: str):
    return public_user(require_user(user_id))


@users.patch("/{user_id}/update")
def update_user(user_id: str, data: UpdateUserIn):
    if data.name is None:
        return public_user(require_user(user_id))
    name = data.name.strip()
    if not name:
        raise InvalidPayload("name must not be empty")
    user = store.update_user_name(user_id, name)
    if not user:
        raise NotFound("User not found")
    return public_user(user)


@users.post("/{user_id}/status")
def toggle_online(user_id: str):
    user = store.toggle_user_online(user_id)
    if not user:
        raise NotFound("User not found")
    return public_user(user)


@users.patch("/{user_id}/friend")
def add_friend(user_id: str, data: FriendIn):
    user = require_user(user_id)
    friend_id = data.friend_id.strip()
    if friend_id in user["friend_ids"]:
        return {"message": "This user is already your friend"}
    if friend_id == user_id:
        raise InvalidPayload("Cannot add yourself")
    if not store.find_user(friend_id):
        raise NotFound("Friend not found")

    store.add_friendship(user_id, friend_id)
    return {"message": "Friend added successfully"}


@users.delete("/{user_id}/friend")
def remove_friend(user_id: str, data: FriendIn = Body(...)):
    user = require_user(user_id)
    friend_id = data.friend_id.strip()
    if friend_id not in user["friend_ids"]:
        return {"message": "This user is not your friend"}

    store.remove_friendship(user_id, friend_id)
    return {"message": "Friend removed successfully"}


@users.delete("/{user_id}/delete")
def delete_user(user_id: str):
    user = store.soft_delete_user(user_id)
    if not user:
        raise NotFound("User not found")
    return public_user(user)


# =========================
# Chats API
# =========================
@chats.get("/user/{user_id}")
def list_user_chats(user_id: str):
    return [chat_snapshot(c) for c in store.list_chats_for_user(user_id)]


@chats.post("/{user_id}")
async def create_chat(user_id: str, data: ChatCreateIn):
    members = [m.strip() for m in data.members if m and m.strip()]
    if not members:
        raise InvalidPayload("members must not be empty")
    group_name = ((data.groupName or "").strip() or None) if data.is_group else None

    chat = store.create_chat(user_id, members, data.is_group, group_name)
    await relay.announce_chat_created(chat)
    return chat_snapshot(chat)


def paginate_chat_messages(chat_id: str, page: Any = DEFAULT_PAGE, limit: Any = DEFAULT_PAGE_LIMIT) -> dict:
    """
    Page 1 holds the newest `limit` messages; within a page the order is
    oldest -> newest. Pages past the end come back empty with real totals.
    """
    page, limit = normalize_page_args(page, limit)
    skip = (page - 1) * limit
    if skip > PG_BIGINT_MAX or limit > PG_BIGINT_MAX:
        raise InvalidPayload("page or limit out of range")
    rows = store.page_chat_messages(chat_id, skip, limit)
    rows.reverse()
    total = store.count_chat_messages(chat_id)
    return {
        "messages": rows,
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit),
    }


@chats.get("/{chat_id}/messages")
def list_chat_messages(
    chat_id: str,
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
):
    require_chat(chat_id)
    return paginate_chat_messages(chat_id, page, limit)


@chats.patch("/{chat_id}")
def update_strict(chat_id: str):
    # persist only: the adjustStrict socket event is what broadcasts
    chat = store.toggle_chat_strict(chat_id)
    if not chat:
        raise NotFound("Chat not found")
    return chat_snapshot(chat)


@chats.delete("/{chat_id}")
async def delete_chat(chat_id: str):
    deleted = store.soft_delete_chat(chat_id)
    if deleted:
        LOGGER.info("chat soft-deleted chat_id=%s", chat_id)
        await relay.announce_chat_deleted(chat_id)
    return {"ok": True, "deleted": deleted}


@chats.get("/{chat_id}")
def get_chat(chat_id: str):
    return chat_snapshot(require_chat(chat_id))


@chats.post("/{chat_id}/add-member")
def add_member(chat_id: str, memberId: str = Query(..., min_length=1)):
    chat = require_chat(chat_id)
    if memberId in chat["members"]:
        raise InvalidPayload("Member already in chat")
    require_user(memberId)
    store.add_chat_member(chat_id, memberId)
    return chat_snapshot(require_chat(chat_id))


@chats.post("/{chat_id}/remove-member")
def remove_member(chat_id: str, memberId: str = Query(..., min_length=1)):
    chat = require_chat(chat_id)
    if memberId not in chat["members"]:
        raise InvalidPayload("Member not in chat")
    store.remove_chat_member(chat_id, memberId)
    return chat_snapshot(require_chat(chat_id))


@chats.patch("/{chat_id}/update-name")
async def rename_chat(chat_id: str, data: ChatRenameIn):
    chat = store.rename_chat(chat_id, data.name.strip())
    if not chat:
        raise NotFound("Chat not found")
    await relay.announce_chat_renamed(chat)
    return chat_snapshot(chat)


async def _upload_to_chat(
    chat_id: str,
    sender_id: str,
    file: Optional[UploadFile],
    profile: UploadProfile,
) -> dict:
    sender_id = (sender_id or "").strip()
    if not sender_id:
        raise InvalidPayload("sender_id is required")
    require_chat(chat_id)

    data = await file.read() if file is not None else None
    content_type = ((file.content_type if file is not None else "") or "").lower().strip()
    key = build_upload_key(file.filename if file is not None else None)
    declared = file.size if file is not None else None

    result = uploader.upload(profile, data, content_type, key, size=declared)
    LOGGER.info("uploaded %s chat_id=%s key=%s", profile.kind, chat_id, result["key"])
    return await relay.post_message(chat_id, sender_id, result["url"], profile.kind)


@chats.post("/{chat_id}/upload-image")
async def upload_image(
    chat_id: str,
    sender_id: str = Form(""),
    file: Optional[UploadFile] = File(None),
):
    return await _upload_to_chat(chat_id, sender_id, file, IMAGE_UPLOAD)


@chats.post("/{chat_id}/upload-file")
async def upload_file(
    chat_id: str,
    sender_id: str = Form(""),
    file: Optional[UploadFile] = File(None),
):
    return await _upload_to_chat(chat_id, sender_id, file, FILE_UPLOAD)


# =========================
# Messages API
# =========================
@messages.get("")
def list_messages():
    return store.list_messages()


@messages.get("/{message_id}")
def get_message(message_id: int):
    # ids outside the bigint range cannot exist
    if not 0 < message_id <= PG_BIGINT_MAX:
        raise NotFound("Message not found")
    message = store.find_message(message_id)
    if not message:
        raise NotFound("Message not found")
    return message


app.include_router(accounts, prefix=API_PREFIX)
app.include_router(users, prefix=API_PREFIX)
app.include_router(chats, prefix=API_PREFIX)
app.include_router(messages, prefix=API_PREFIX)


# =========================
# WebSocket: chat relay
# =========================
@app.websocket("/ws")
async def ws_chat(ws: WebSocket):
    """
    Frames in:  {"type": <event>, ...fields}
      - joinChat {chat_id}
      - subscribeToUser {user_id}
      - sendMessage {chat_id, sender_id, content}
      - sendNotiAdjustMember {chat_id, sender_id, member_id, isAdd}
      - sendNotiUpdateGroupName {chat_id, sender_id, groupName}
      - typing / stopTyping {chat_id, sender_id}
      - adjustStrict {chat_id}
    Frames out: {"type": <event>, "data": ...}
      - newMessage, chatCreated, chatUpdated, adjustStrict, typing,
        stopTyping, joinedChat, user subscribed, error
    """
    if "ws" in AUTH_REQUIRED:
        token = (ws.query_params.get("token") or "").strip()
        try:
            if not token:
                raise Unauthorized("No token provided")
            jwt_verify(token)
        except Unauthorized:
            await ws.close(code=4401)
            return

    await ws.accept()
    LOGGER.info("session connected id=%s", id(ws))
    try:
        while True:
            msg = await ws.receive()
            if msg["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(msg.get("code", 1000))
            # text and binary frames parse the same way
            raw = msg.get("text") if msg.get("text") is not None else (msg.get("bytes") or b"")
            await relay.dispatch(ws, raw)
    except WebSocketDisconnect:
        pass
    finally:
        relay.rooms.drop(ws)
        LOGGER.info("session closed id=%s", id(ws))
