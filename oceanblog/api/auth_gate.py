from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from fastapi import Depends, Header, Request

from oceanblog.logging import get_logger
from oceanblog.service.errors import (
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
)
from oceanblog.service.runtime import get_runtime
from oceanblog.storage.models import User

logger = get_logger(__name__)

ResourceLoader = Callable[[str], Union[Any, Awaitable[Any]]]


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credentials.strip() or None


async def authenticate(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> User:
    """Require a valid bearer access token and attach its user to the request."""
    runtime = get_runtime()
    user = runtime.auth.authenticate_access_token(extract_bearer(authorization))
    request.state.user = user
    return user


async def optional_auth(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[User]:
    """Attach the user when a usable token is present; never rejects the request."""
    token = extract_bearer(authorization)
    request.state.user = None
    if not token:
        return None
    runtime = get_runtime()
    try:
        user = runtime.auth.authenticate_access_token(token)
    except UnauthorizedError as exc:
        # kept so authorize() can report why the credentials were refused
        request.state.auth_error = exc
        return None
    request.state.user = user
    return user


def authorize(*roles: str) -> Callable[..., Awaitable[User]]:
    """Dependency factory admitting only users whose role is in ``roles``.

    With no roles any authenticated user passes.
    """

    async def _authorize(
        request: Request, user: Optional[User] = Depends(optional_auth)
    ) -> User:
        if user is None:
            previous = getattr(request.state, "auth_error", None)
            if previous is not None:
                raise previous
            raise UnauthorizedError("Authentication required")
        if roles and user.role not in roles:
            logger.info(
                "authorization_denied",
                user_id=user.id,
                role=user.role,
                required=list(roles),
                path=request.url.path,
            )
            raise ForbiddenError("Insufficient permissions")
        return user

    return _authorize


def _owner_of(resource: Any, owner_field: str) -> Optional[str]:
    if isinstance(resource, dict):
        owner = resource.get(owner_field)
    else:
        owner = getattr(resource, owner_field, None)
    if owner is None:
        return None
    # owner may be an id or an embedded user record
    return str(getattr(owner, "id", owner))


def check_ownership(
    loader: ResourceLoader,
    owner_field: str = "user",
    id_param: str = "id",
) -> Callable[..., Awaitable[Any]]:
    """Dependency factory loading a resource and requiring the caller to own it.

    ``loader`` receives the ``id_param`` path parameter and returns the
    resource or None; it may be sync or async. Admins pass regardless of
    ownership. The resource lands on ``request.state.resource``.
    """

    async def _check_ownership(request: Request, user: User = Depends(authenticate)) -> Any:
        resource_id = request.path_params.get(id_param)
        resource = loader(resource_id) if resource_id is not None else None
        if inspect.isawaitable(resource):
            resource = await resource
        if resource is None:
            raise NotFoundError("Resource not found")
        if user.role != "admin" and _owner_of(resource, owner_field) != user.id:
            logger.info(
                "ownership_denied",
                user_id=user.id,
                resource_id=resource_id,
                path=request.url.path,
            )
            raise ForbiddenError("Not authorized to access this resource")
        request.state.resource = resource
        return resource

    return _check_ownership


async def require_email_verification(user: User = Depends(authenticate)) -> User:
    if not user.is_email_verified:
        raise ForbiddenError("Email verification required")
    return user
