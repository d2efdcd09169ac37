from __future__ import annotations

import asyncio
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from xserver.api.schemas import (
    CreatePostRequest,
    DeviceSessionResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    PostPageResponse,
    PostResponse,
    RefreshTokenRequest,
    RegisterRequest,
    TokenResponse,
    TwoFactorToggleRequest,
    TwoFactorVerifyRequest,
    UpdatePostRequest,
    UserResponse,
)
from xserver.logging import get_logger
from xserver.service.auth import AuthContext
from xserver.service.errors import NotFoundError, UnauthorizedError
from xserver.service.posts import Page
from xserver.service.runtime import get_runtime
from xserver.storage.models import LoginResult, Post

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx:
        raise UnauthorizedError("Invalid or missing access token")
    return ctx


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _login_payload(result: LoginResult) -> dict:
    return LoginResponse(
        user=UserResponse.from_user(result.user),
        tokens=TokenResponse.from_pair(result.tokens) if result.tokens else None,
        active_devices=[DeviceSessionResponse.from_session(s) for s in result.sessions],
        requires_two_factor=result.two_factor_required,
        two_factor_token=result.two_factor_token,
    ).dump()


def _page_payload(page: Page[Post]) -> dict:
    return PostPageResponse(
        content=[PostResponse.from_post(p) for p in page.content],
        page=page.page,
        size=page.size,
        total_pages=page.total_pages,
        total_elements=page.total_elements,
        has_previous=page.has_previous,
        has_next=page.has_next,
    ).dump()


# -- auth ------------------------------------------------------------------


@router.post("/user/register", response_model=Envelope, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account.

    Raises:
        400: If a field is missing or the username/email is already taken
    """
    runtime = get_runtime()
    user = await asyncio.to_thread(
        runtime.auth.register, body.username, body.password, body.email, body.phone
    )
    return Envelope(
        code=200,
        message="User registered successfully",
        data=UserResponse.from_user(user).dump(),
    )


@router.post("/user/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with username and password.

    Returns tokens directly, or a two-factor challenge token when the account
    has two-factor enabled.

    Raises:
        400: If credentials are invalid
        403: If the account is locked after repeated failures
    """
    runtime = get_runtime()
    # Password hashing is CPU bound; keep it off the event loop
    result = await asyncio.to_thread(
        runtime.auth.login,
        body.username,
        body.password,
        device=body.device_info.to_domain() if body.device_info else None,
        remember_me=body.remember_me,
        ip_address=_client_ip(request),
    )
    message = (
        "Two-factor authentication required"
        if result.two_factor_required
        else "Login successful"
    )
    return Envelope(code=200, message=message, data=_login_payload(result))


@router.post("/user/verify-2fa", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: TwoFactorVerifyRequest, request: Request):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.auth.verify_two_factor,
        body.two_factor_token,
        body.code,
        device=body.device_info.to_domain() if body.device_info else None,
        remember_me=body.remember_me,
        ip_address=_client_ip(request),
    )
    return Envelope(
        code=200,
        message="Two-factor authentication successful",
        data=_login_payload(result),
    )


@router.post("/user/refresh", response_model=Envelope, tags=["auth"])
async def refresh_token(body: RefreshTokenRequest):
    """Exchange a refresh token for a new access token; the refresh token is unchanged."""
    runtime = get_runtime()
    pair = await asyncio.to_thread(runtime.auth.refresh, body.refresh_token)
    return Envelope(
        code=200,
        message="Token refreshed successfully",
        data=TokenResponse.from_pair(pair).dump(),
    )


@router.get("/user/me", response_model=Envelope, tags=["user"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if user is None:
        raise NotFoundError("User not found")
    return Envelope(code=200, message="OK", data=UserResponse.from_user(user).dump())


@router.put("/user/two-factor", response_model=Envelope, tags=["user"])
async def toggle_two_factor(
    body: TwoFactorToggleRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = await asyncio.to_thread(
        runtime.auth.set_two_factor, principal.username, body.enabled
    )
    state = "enabled" if body.enabled else "disabled"
    return Envelope(
        code=200,
        message=f"Two-factor authentication {state}",
        data=UserResponse.from_user(user).dump(),
    )


@router.post("/user/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.logout, principal)
    return Envelope(code=200, message="Logged out")


# -- device sessions -------------------------------------------------------


@router.get("/user/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(
        principal.username, current_session_id=principal.session_id
    )
    return Envelope(
        code=200,
        message="OK",
        data=[DeviceSessionResponse.from_session(s).dump() for s in sessions],
    )


@router.post("/user/sessions/revoke-all", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    count = await asyncio.to_thread(runtime.auth.revoke_all_sessions, principal.username)
    return Envelope(code=200, message="All sessions revoked", data={"revoked": count})


@router.delete("/user/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.revoke_session, principal.username, session_id)
    return Envelope(code=200, message="Session revoked")


# -- posts -----------------------------------------------------------------


@router.post("/posts", response_model=Envelope, status_code=201, tags=["posts"])
async def create_post(body: CreatePostRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    post = runtime.posts.create(
        author_id=principal.user_id,
        author_name=principal.username,
        title=body.title,
        content=body.content,
        tags=body.tags,
        category=body.category,
    )
    return Envelope(
        code=201, message="Post created successfully", data=PostResponse.from_post(post).dump()
    )


@router.get("/posts", response_model=Envelope, tags=["posts"])
async def list_posts(
    tag: Optional[str] = Query(None, max_length=64),
    category: Optional[str] = Query(None, max_length=64),
    author_id: Optional[str] = Query(None, alias="authorId", max_length=64),
    q: Optional[str] = Query(None, max_length=200),
    page: int = Query(0, ge=0),
    size: int = Query(10, ge=1, le=100),
    sort: str = Query("createdAt,desc", max_length=64),
):
    runtime = get_runtime()
    result = runtime.posts.search(
        tag=tag,
        category=category,
        author_id=author_id,
        keyword=q,
        page=page,
        size=size,
        sort=sort,
    )
    return Envelope(code=200, message="OK", data=_page_payload(result))


@router.get("/posts/recent", response_model=Envelope, tags=["posts"])
async def recent_posts(limit: int = Query(5, ge=1, le=100)):
    runtime = get_runtime()
    posts: List[Post] = runtime.posts.recent(limit)
    return Envelope(
        code=200, message="OK", data=[PostResponse.from_post(p).dump() for p in posts]
    )


@router.get("/posts/user/{author_id}", response_model=Envelope, tags=["posts"])
async def posts_by_author(
    author_id: str = Path(..., max_length=64),
    page: int = Query(0, ge=0),
    size: int = Query(10, ge=1, le=100),
    sort: str = Query("createdAt,desc", max_length=64),
):
    runtime = get_runtime()
    result = runtime.posts.by_author(author_id, page=page, size=size, sort=sort)
    return Envelope(code=200, message="OK", data=_page_payload(result))


@router.get("/posts/{post_id}", response_model=Envelope, tags=["posts"])
async def get_post(post_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    post = runtime.posts.get(post_id)
    return Envelope(code=200, message="OK", data=PostResponse.from_post(post).dump())


@router.put("/posts/{post_id}", response_model=Envelope, tags=["posts"])
async def update_post(
    body: UpdatePostRequest,
    post_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    """Partially update a post.

    Raises:
        403: If the caller is not the author
        404: If the post does not exist
    """
    runtime = get_runtime()
    post = runtime.posts.update(
        post_id,
        principal.user_id,
        title=body.title,
        content=body.content,
        tags=body.tags,
        category=body.category,
    )
    return Envelope(
        code=200, message="Post updated successfully", data=PostResponse.from_post(post).dump()
    )


@router.delete("/posts/{post_id}", response_model=Envelope, tags=["posts"])
async def delete_post(
    post_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.posts.delete(post_id, principal.user_id)
    return Envelope(code=200, message="Post deleted successfully")


# -- configuration ---------------------------------------------------------


@router.get("/config", response_model=Envelope, tags=["config"])
async def get_client_config():
    runtime = get_runtime()
    return Envelope(code=200, message="OK", data=runtime.app_config.client_config())


@router.get("/app-config", response_model=Envelope, tags=["config"])
async def get_app_config(
    response: Response,
    x_app_version: Optional[str] = Header(None, alias="X-App-Version", max_length=32),
):
    runtime = get_runtime()
    response.headers["Cache-Control"] = "no-store"
    return Envelope(
        code=200, message="OK", data=runtime.app_config.app_config(x_app_version)
    )


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def list_all_users(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    users = runtime.auth.list_users(limit=1000)
    logger.info("admin_users_listed", requested_by=principal.user_id, count=len(users))
    return Envelope(
        code=200,
        message="All users retrieved successfully",
        data=[UserResponse.from_user(u).dump() for u in users],
    )
