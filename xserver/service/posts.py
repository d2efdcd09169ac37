from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Protocol, TypeVar

from xserver.logging import get_logger
from xserver.service.clock import Clock, utc_now
from xserver.service.errors import AuthorizationError, NotFoundError, ValidationError
from xserver.storage.models import Post

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_SORT = "createdAt,desc"
MAX_PAGE_SIZE = 100

_SORT_KEYS: Dict[str, Callable[[Post], Any]] = {
    "title": lambda p: p.title,
    "authorname": lambda p: p.author_name,
    "category": lambda p: p.category,
    "updatedat": lambda p: p.updated_at,
    "createdat": lambda p: p.created_at,
}


class PostStore(Protocol):
    def create_post(self, **kwargs: Any) -> Post: ...

    def get_post(self, post_id: str) -> Optional[Post]: ...

    def list_posts(self) -> List[Post]: ...

    def update_post(self, post_id: str, **fields: Any) -> Optional[Post]: ...

    def delete_post(self, post_id: str) -> bool: ...


@dataclass
class Page(Generic[T]):
    content: List[T] = field(default_factory=list)
    page: int = 0
    size: int = 10
    total_elements: int = 0
    total_pages: int = 0

    @property
    def has_previous(self) -> bool:
        return self.page > 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages - 1


def parse_sort(sort: Optional[str]) -> tuple[str, bool]:
    """Split ``"field,dir"`` into a known sort key and an ascending flag."""
    raw = (sort or DEFAULT_SORT).split(",")
    key = raw[0].strip().lower() or "createdat"
    if key not in _SORT_KEYS:
        raise ValidationError(
            f"Unsupported sort field: {raw[0].strip()}",
            detail={"field": "sort", "allowed": sorted(_SORT_KEYS)},
        )
    ascending = len(raw) > 1 and raw[1].strip().lower() == "asc"
    return key, ascending


def sort_posts(posts: List[Post], key: str, ascending: bool) -> List[Post]:
    """Sort by one field; missing values go first ascending and last descending."""
    getter = _SORT_KEYS[key]
    present = [p for p in posts if getter(p) is not None]
    missing = [p for p in posts if getter(p) is None]
    ordered = sorted(present, key=getter, reverse=not ascending)
    return missing + ordered if ascending else ordered + missing


def paginate(items: List[T], page: int, size: int) -> Page[T]:
    if page < 0:
        raise ValidationError("page must be >= 0", detail={"field": "page"})
    if size < 1 or size > MAX_PAGE_SIZE:
        raise ValidationError(
            f"size must be between 1 and {MAX_PAGE_SIZE}", detail={"field": "size"}
        )
    total = len(items)
    start = page * size
    return Page(
        content=items[start:start + size],
        page=page,
        size=size,
        total_elements=total,
        total_pages=math.ceil(total / size) if total else 0,
    )


class PostService:
    """CRUD, filtering and paging over posts with author-only mutation."""

    def __init__(self, store: PostStore, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self._clock: Clock = clock or utc_now

    def create(
        self,
        *,
        author_id: str,
        author_name: str,
        title: str,
        content: str,
        tags: Optional[List[str]] = None,
        category: Optional[str] = None,
    ) -> Post:
        if not title or not title.strip():
            raise ValidationError("Title is required", detail={"field": "title"})
        if not content or not content.strip():
            raise ValidationError("Content is required", detail={"field": "content"})
        post = self.store.create_post(
            title=title.strip(),
            content=content,
            author_id=author_id,
            author_name=author_name,
            tags=tags,
            category=category,
            now=self._clock(),
        )
        logger.info("post_created", post_id=post.id, author_id=author_id)
        return post

    def get(self, post_id: str) -> Post:
        post = self.store.get_post(post_id)
        if post is None:
            raise NotFoundError("Post not found", detail={"post_id": post_id})
        return post

    def _owned(self, post_id: str, actor_id: str) -> Post:
        post = self.get(post_id)
        if post.author_id != actor_id:
            logger.warning("post_ownership_denied", post_id=post_id, actor_id=actor_id)
            raise AuthorizationError("You can only modify your own posts")
        return post

    def update(
        self,
        post_id: str,
        actor_id: str,
        *,
        title: Optional[str] = None,
        content: Optional[str] = None,
        tags: Optional[List[str]] = None,
        category: Optional[str] = None,
    ) -> Post:
        self._owned(post_id, actor_id)
        if title is not None and not title.strip():
            raise ValidationError("Title cannot be blank", detail={"field": "title"})
        updated = self.store.update_post(
            post_id,
            title=title.strip() if title is not None else None,
            content=content,
            tags=tags,
            category=category,
            now=self._clock(),
        )
        if updated is None:
            raise NotFoundError("Post not found", detail={"post_id": post_id})
        logger.info("post_updated", post_id=post_id, actor_id=actor_id)
        return updated

    def delete(self, post_id: str, actor_id: str) -> None:
        self._owned(post_id, actor_id)
        if not self.store.delete_post(post_id):
            raise NotFoundError("Post not found", detail={"post_id": post_id})
        logger.info("post_deleted", post_id=post_id, actor_id=actor_id)

    def search(
        self,
        *,
        tag: Optional[str] = None,
        category: Optional[str] = None,
        author_id: Optional[str] = None,
        keyword: Optional[str] = None,
        page: int = 0,
        size: int = 10,
        sort: Optional[str] = None,
    ) -> Page[Post]:
        """Filter, sort and page posts.

        Only one of ``tag``, ``category`` or ``author_id`` applies, checked in
        that order. ``keyword`` narrows the result further by a
        case-insensitive match on title or content.
        """
        key, ascending = parse_sort(sort)
        posts = self.store.list_posts()
        if tag:
            posts = [p for p in posts if tag in p.tags]
        elif category:
            posts = [p for p in posts if p.category == category]
        elif author_id:
            posts = [p for p in posts if p.author_id == author_id]
        if keyword:
            needle = keyword.lower()
            posts = [
                p for p in posts if needle in p.title.lower() or needle in p.content.lower()
            ]
        return paginate(sort_posts(posts, key, ascending), page, size)

    def by_author(
        self, author_id: str, *, page: int = 0, size: int = 10, sort: Optional[str] = None
    ) -> Page[Post]:
        return self.search(author_id=author_id, page=page, size=size, sort=sort)

    def recent(self, limit: int = 5) -> List[Post]:
        if limit < 1:
            raise ValidationError("limit must be >= 1", detail={"field": "limit"})
        return sort_posts(self.store.list_posts(), "createdat", False)[:limit]
