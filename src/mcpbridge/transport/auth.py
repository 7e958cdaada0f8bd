"""Secret resolution and auth injection for remote transports."""

import os
from collections.abc import Mapping

import httpx

from mcpbridge.config import AuthConfig
from mcpbridge.exceptions import AuthError


def resolve_secret(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Resolve a ``$NAME`` reference against the environment.

    Literal values pass through unchanged. Resolution happens per call so a
    rotated environment value is picked up by the next request.

    Raises:
        AuthError: If the referenced variable is unset or empty
    """
    if not value.startswith("$"):
        return value

    environ = os.environ if environ is None else environ
    name = value[1:]
    resolved = environ.get(name)
    if not resolved:
        raise AuthError(f"Environment variable '{name}' is not set")
    return resolved


def build_auth(
    auth: AuthConfig | None, environ: Mapping[str, str] | None = None
) -> tuple[dict[str, str], httpx.Auth | None]:
    """Build the headers and httpx auth for one request.

    Returns:
        Extra headers to send, and an httpx.Auth to pass to the request
        (only used for basic credentials)

    Raises:
        AuthError: If a referenced secret cannot be resolved
    """
    if auth is None:
        return {}, None

    if auth.type == "bearer":
        token = resolve_secret(auth.token, environ)
        return {"Authorization": f"Bearer {token}"}, None

    if auth.type == "apikey":
        return {auth.header: resolve_secret(auth.key, environ)}, None

    username = resolve_secret(auth.username, environ)
    password = resolve_secret(auth.password, environ)
    return {}, httpx.BasicAuth(username, password)
