from __future__ import annotations

import base64
import hashlib
import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from xserver.logging import get_logger
from xserver.storage.errors import ConstraintViolation
from xserver.storage.models import Post, User

_UPDATABLE_POST_FIELDS = {"title", "content", "tags", "category", "status"}


class MemoryStore:
    """In-process credential and post store.

    Usernames and emails are unique (exact, case-sensitive match). When
    ``persist`` is set the full state is rewritten to
    ``<fs_root>/state/store.json`` after every mutation and reloaded on start.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/xserver",
        *,
        persist: bool = False,
        secret_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.posts: Dict[str, Post] = {}
        self._username_index: Dict[str, str] = {}
        self._email_index: Dict[str, str] = {}
        # RLock so persistence can run inside an outer mutation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        self._cipher = self._build_cipher(secret_key)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str | None) -> Fernet:
        if not key_material:
            if self.persist:
                self.logger.warning(
                    "store_cipher_ephemeral",
                    message="no secret key supplied; persisted two-factor secrets will be unreadable after restart",
                )
            return Fernet(Fernet.generate_key())
        return Fernet(self._derive_cipher_key(key_material))

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("two_factor_secret_decrypt_failed")
            return None

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        phone: Optional[str] = None,
        password_algo: str = "argon2id",
    ) -> User:
        with self._data_lock:
            if username in self._username_index:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = datetime.now(timezone.utc)
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                phone=phone,
                created_at=now,
                updated_at=now,
                password_algo=password_algo,
            )
            self.users[user.id] = user
            self._username_index[username] = user.id
            self._email_index[email] = user.id
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._username_index.get(username)
            return self.users.get(user_id) if user_id else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(email)
            return self.users.get(user_id) if user_id else None

    def username_exists(self, username: str) -> bool:
        with self._data_lock:
            return username in self._username_index

    def email_exists(self, email: str) -> bool:
        with self._data_lock:
            return email in self._email_index

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at)[:limit]

    def set_two_factor(
        self, user_id: str, *, enabled: bool, secret: Optional[str] = None
    ) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.two_factor_enabled = enabled
            user.two_factor_secret = self._encrypt_secret(secret) if enabled else None
            user.updated_at = datetime.now(timezone.utc)
            self._persist_state()
            return user

    def get_two_factor_secret(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            return self._decrypt_secret(user.two_factor_secret)

    # -- posts -------------------------------------------------------------

    def create_post(
        self,
        *,
        title: str,
        content: str,
        author_id: str,
        author_name: str,
        tags: Optional[List[str]] = None,
        category: Optional[str] = None,
        status: str = "PUBLISHED",
        now: Optional[datetime] = None,
    ) -> Post:
        timestamp = now or datetime.now(timezone.utc)
        post = Post(
            id=str(uuid.uuid4()),
            title=title,
            content=content,
            author_id=author_id,
            author_name=author_name,
            created_at=timestamp,
            updated_at=timestamp,
            status=status,
            tags=list(tags or []),
            category=category,
        )
        with self._data_lock:
            self.posts[post.id] = post
            self._persist_state()
        return post

    def get_post(self, post_id: str) -> Optional[Post]:
        with self._data_lock:
            return self.posts.get(post_id)

    def list_posts(self) -> List[Post]:
        with self._data_lock:
            return list(self.posts.values())

    def update_post(
        self, post_id: str, *, now: Optional[datetime] = None, **fields: Any
    ) -> Optional[Post]:
        unknown = set(fields) - _UPDATABLE_POST_FIELDS
        if unknown:
            raise ValueError(f"unsupported post fields: {sorted(unknown)}")
        with self._data_lock:
            post = self.posts.get(post_id)
            if not post:
                return None
            updated = replace(
                post,
                **{k: v for k, v in fields.items() if v is not None},
                updated_at=now or datetime.now(timezone.utc),
            )
            self.posts[post_id] = updated
            self._persist_state()
            return updated

    def delete_post(self, post_id: str) -> bool:
        with self._data_lock:
            removed = self.posts.pop(post_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    # -- persistence -------------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "phone": user.phone,
            "password_hash": user.password_hash,
            "password_algo": user.password_algo,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "is_active": user.is_active,
            "two_factor_enabled": user.two_factor_enabled,
            "two_factor_secret": user.two_factor_secret,
            "social_ids": user.social_ids,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            phone=data.get("phone"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
            is_active=data.get("is_active", True),
            two_factor_enabled=data.get("two_factor_enabled", False),
            two_factor_secret=data.get("two_factor_secret"),
            social_ids=data.get("social_ids") or {},
            password_algo=data.get("password_algo", "argon2id"),
        )

    def _serialize_post(self, post: Post) -> dict:
        return {
            "id": post.id,
            "title": post.title,
            "content": post.content,
            "author_id": post.author_id,
            "author_name": post.author_name,
            "created_at": self._serialize_datetime(post.created_at),
            "updated_at": self._serialize_datetime(post.updated_at),
            "status": post.status,
            "tags": post.tags,
            "category": post.category,
        }

    def _deserialize_post(self, data: dict) -> Post:
        return Post(
            id=str(data["id"]),
            title=data["title"],
            content=data["content"],
            author_id=data["author_id"],
            author_name=data.get("author_name", ""),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            status=data.get("status", "PUBLISHED"),
            tags=list(data.get("tags") or []),
            category=data.get("category"),
        )

    def _persist_state(self) -> None:
        if not self.persist:
            return
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "posts": [self._serialize_post(p) for p in self.posts.values()],
            }
            path = self._state_path()
            tmp_path = path.with_suffix(".tmp")
            try:
                tmp_path.write_text(json.dumps(state, indent=2))
                tmp_path.replace(path)
            except OSError as exc:
                raise RuntimeError(f"failed to persist store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        with self._data_lock:
            self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
            self.posts = {p["id"]: self._deserialize_post(p) for p in data.get("posts", [])}
            self._username_index = {u.username: u.id for u in self.users.values()}
            self._email_index = {u.email: u.id for u in self.users.values()}
        self.logger.info(
            "store_state_loaded", users=len(self.users), posts=len(self.posts)
        )
        return True
