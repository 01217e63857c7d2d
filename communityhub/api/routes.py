from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from communityhub.api.schemas import (
    CommentListResponse,
    CommentRequest,
    CommentResponse,
    CommunityAssignmentResponse,
    CommunityCreateRequest,
    CommunityListResponse,
    CommunityResponse,
    DeletedResponse,
    Envelope,
    ErrorBody,
    PostCreateRequest,
    PostListResponse,
    PostResponse,
    PostUpdateRequest,
    UserResponse,
    VoteRequest,
    VoteResponse,
)
from communityhub.logging import get_logger
from communityhub.service.auth import AuthContext
from communityhub.service.authorization import (
    validate_no_identity_in_query,
    validate_no_owner_id_in_body,
)
from communityhub.service.errors import AuthenticationError, ServiceError, ValidationError
from communityhub.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

RequestModel = TypeVar("RequestModel", bound=BaseModel)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Bearer-token identity; the handler never runs without it."""
    runtime = get_runtime()
    try:
        return runtime.auth.authenticate_bearer(authorization)
    except AuthenticationError as exc:
        raise _http_error("unauthorized", exc.message, status_code=401)


async def reject_identity_in_query(request: Request) -> None:
    validate_no_identity_in_query(
        request.query_params, method=request.method, path=request.url.path
    )


async def _parse_body(request: Request, model: Type[RequestModel]) -> RequestModel:
    """Read a JSON object body, refusing caller-supplied identity before parsing."""
    try:
        payload: Any = await request.json()
    except ValueError:
        raise ValidationError("request body must be valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    validate_no_owner_id_in_body(payload)
    return model.model_validate(payload)


# -- session cookie ----------------------------------------------------------


def _set_session_cookie(response: Response, token: str) -> None:
    runtime = get_runtime()
    settings = runtime.settings
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=runtime.tokens.ttl_seconds,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        domain=runtime.auth.cookie_domain(),
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    runtime = get_runtime()
    settings = runtime.settings
    response.delete_cookie(
        settings.session_cookie_name,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        domain=runtime.auth.cookie_domain(),
        path="/",
    )


def _session_cookie(request: Request) -> Optional[str]:
    return request.cookies.get(get_runtime().settings.session_cookie_name)


# -- OAuth login ---------------------------------------------------------------


@router.get("/auth/shopify/login", tags=["auth"])
async def shopify_login(
    return_to: Optional[str] = Query(None, alias="returnTo"),
):
    """Start a Shopify login: store state and nonce, then redirect to the provider."""
    runtime = get_runtime()
    try:
        login = await runtime.auth.initiate_login(return_to)
    except ServiceError as exc:
        logger.error("oauth_login_failed", error_code=exc.error_code, message=exc.message)
        return RedirectResponse(runtime.auth.redirect_for_error(exc), status_code=302)
    except Exception as exc:
        logger.exception(
            "oauth_login_unhandled",
            exc_info=exc,
            error_type=type(exc).__name__,
        )
        return RedirectResponse(
            runtime.auth.error_redirect_url("authentication_failed"), status_code=302
        )
    return RedirectResponse(login.url, status_code=302)


@router.get("/auth/shopify/callback", tags=["auth"])
async def shopify_callback(request: Request):
    """Provider redirect target.

    Always answers with a 302: to the frontend callback page carrying the app
    token, or to the frontend error page carrying an error code.
    """
    runtime = get_runtime()
    params: Dict[str, str] = dict(request.query_params)
    try:
        result = await runtime.auth.handle_callback(
            code=params.get("code"),
            state=params.get("state"),
            error=params.get("error"),
            error_description=params.get("error_description"),
            params=params,
        )
    except ServiceError as exc:
        logger.warning(
            "oauth_callback_failed",
            error_code=exc.error_code,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        return RedirectResponse(runtime.auth.redirect_for_error(exc), status_code=302)
    except Exception as exc:
        logger.exception(
            "oauth_callback_unhandled",
            exc_info=exc,
            error_type=type(exc).__name__,
        )
        return RedirectResponse(
            runtime.auth.error_redirect_url("authentication_failed"), status_code=302
        )

    response = RedirectResponse(
        runtime.auth.frontend_callback_url(result.app_token, result.return_to),
        status_code=302,
    )
    _set_session_cookie(response, result.session_token)
    return response


@router.get("/auth/me", tags=["auth"])
async def auth_me(request: Request, response: Response):
    runtime = get_runtime()
    view = runtime.auth.get_session(_session_cookie(request))
    if view.clear_cookie:
        _clear_session_cookie(response)
    if not view.authenticated:
        return {"authenticated": False}
    return {"authenticated": True, "user": view.user}


@router.post("/auth/logout", tags=["auth"])
async def auth_logout(response: Response):
    _clear_session_cookie(response)
    return {"success": True}


@router.post("/auth/refresh", tags=["auth"])
async def auth_refresh(request: Request):
    runtime = get_runtime()
    cookie = _session_cookie(request)
    try:
        token, claims = runtime.auth.refresh_session(cookie)
    except AuthenticationError as exc:
        logger.info("session_refresh_rejected", reason=exc.message)
        rejected = JSONResponse(
            status_code=401,
            content=Envelope(
                status="error",
                error=ErrorBody(code="unauthorized", message="session expired or invalid"),
            ).model_dump(mode="json"),
        )
        if cookie:
            _clear_session_cookie(rejected)
        return rejected
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=runtime.tokens.ttl_seconds)
    response = JSONResponse(
        content={"success": True, "expiresAt": expires_at.isoformat()}
    )
    _set_session_cookie(response, token)
    logger.info("session_refreshed", user_id=claims.user_id)
    return response


# -- user ----------------------------------------------------------------------


@router.get("/api/user/me", response_model=Envelope, tags=["user"])
async def current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(status="ok", data=UserResponse.from_model(user))


@router.get("/api/user/community", response_model=Envelope, tags=["user"])
async def current_user_community(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(
        status="ok", data=CommunityAssignmentResponse(community_id=user.community_id)
    )


# -- communities ---------------------------------------------------------------


@router.get("/communities", response_model=Envelope, tags=["communities"])
async def list_communities():
    communities = get_runtime().forum.list_communities()
    return Envelope(
        status="ok",
        data=CommunityListResponse(
            items=[CommunityResponse.from_model(c) for c in communities]
        ),
    )


@router.post(
    "/communities",
    response_model=Envelope,
    status_code=201,
    tags=["communities"],
    dependencies=[Depends(reject_identity_in_query)],
)
async def create_community(request: Request, principal: AuthContext = Depends(get_user)):
    body = await _parse_body(request, CommunityCreateRequest)
    community = get_runtime().forum.create_community(principal.user_id, body.model_dump())
    return Envelope(status="ok", data=CommunityResponse.from_model(community))


@router.get("/communities/{community_id}", response_model=Envelope, tags=["communities"])
async def get_community(community_id: str = Path(..., max_length=128)):
    community = get_runtime().forum.get_community(community_id)
    return Envelope(status="ok", data=CommunityResponse.from_model(community))


# -- posts -----------------------------------------------------------------------


@router.get("/posts", response_model=Envelope, tags=["posts"])
async def list_posts(community: Optional[str] = Query(None, max_length=128)):
    posts = get_runtime().forum.list_posts(community)
    return Envelope(
        status="ok",
        data=PostListResponse(items=[PostResponse.from_model(p) for p in posts]),
    )


@router.get("/posts/{post_id}", response_model=Envelope, tags=["posts"])
async def get_post(post_id: str = Path(..., max_length=128)):
    forum = get_runtime().forum
    post = forum.get_post(post_id)
    return Envelope(
        status="ok", data=PostResponse.from_model(post, forum.list_comments(post_id))
    )


@router.post(
    "/posts",
    response_model=Envelope,
    status_code=201,
    tags=["posts"],
    dependencies=[Depends(reject_identity_in_query)],
)
async def create_post(request: Request, principal: AuthContext = Depends(get_user)):
    body = await _parse_body(request, PostCreateRequest)
    post = get_runtime().forum.create_post(principal.user_id, body.model_dump())
    return Envelope(status="ok", data=PostResponse.from_model(post))


@router.put(
    "/posts/{post_id}",
    response_model=Envelope,
    tags=["posts"],
    dependencies=[Depends(reject_identity_in_query)],
)
async def update_post(
    request: Request,
    post_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    body = await _parse_body(request, PostUpdateRequest)
    post = get_runtime().forum.update_post(
        principal.user_id, post_id, body.model_dump(exclude_unset=True)
    )
    return Envelope(status="ok", data=PostResponse.from_model(post))


@router.delete(
    "/posts/{post_id}",
    response_model=Envelope,
    tags=["posts"],
    dependencies=[Depends(reject_identity_in_query)],
)
async def delete_post(
    post_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    get_runtime().forum.delete_post(principal.user_id, post_id)
    return Envelope(status="ok", data=DeletedResponse(id=post_id))


@router.post(
    "/posts/{post_id}/vote",
    response_model=Envelope,
    tags=["posts"],
    dependencies=[Depends(reject_identity_in_query)],
)
async def vote_post(
    request: Request,
    post_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    body = await _parse_body(request, VoteRequest)
    outcome = get_runtime().forum.vote_post(principal.user_id, post_id, body.value)
    return Envelope(status="ok", data=VoteResponse.from_model(outcome))


# -- comments --------------------------------------------------------------------


@router.get("/posts/{post_id}/comments", response_model=Envelope, tags=["comments"])
async def list_comments(post_id: str = Path(..., max_length=128)):
    comments = get_runtime().forum.list_comments(post_id)
    return Envelope(
        status="ok",
        data=CommentListResponse(items=[CommentResponse.from_model(c) for c in comments]),
    )


@router.post(
    "/posts/{post_id}/comments",
    response_model=Envelope,
    status_code=201,
    tags=["comments"],
    dependencies=[Depends(reject_identity_in_query)],
)
async def add_comment(
    request: Request,
    post_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    body = await _parse_body(request, CommentRequest)
    comment = get_runtime().forum.add_comment(principal.user_id, post_id, body.model_dump())
    return Envelope(status="ok", data=CommentResponse.from_model(comment))


@router.put(
    "/comments/{comment_id}",
    response_model=Envelope,
    tags=["comments"],
    dependencies=[Depends(reject_identity_in_query)],
)
async def update_comment(
    request: Request,
    comment_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    body = await _parse_body(request, CommentRequest)
    comment = get_runtime().forum.update_comment(
        principal.user_id, comment_id, body.model_dump()
    )
    return Envelope(status="ok", data=CommentResponse.from_model(comment))


@router.delete(
    "/comments/{comment_id}",
    response_model=Envelope,
    tags=["comments"],
    dependencies=[Depends(reject_identity_in_query)],
)
async def delete_comment(
    comment_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    get_runtime().forum.delete_comment(principal.user_id, comment_id)
    return Envelope(status="ok", data=DeletedResponse(id=comment_id))


@router.post(
    "/comments/{comment_id}/vote",
    response_model=Envelope,
    tags=["comments"],
    dependencies=[Depends(reject_identity_in_query)],
)
async def vote_comment(
    request: Request,
    comment_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    body = await _parse_body(request, VoteRequest)
    outcome = get_runtime().forum.vote_comment(principal.user_id, comment_id, body.value)
    return Envelope(status="ok", data=VoteResponse.from_model(outcome))
