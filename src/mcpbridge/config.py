"""Server configuration models and config-file loading."""

import json
import logging
import shlex
from enum import Enum
from pathlib import Path
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from mcpbridge.exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000


class TransportKind(str, Enum):
    """How a server is reached."""

    STDIO = "stdio"
    HTTP = "http"
    SSE = "sse"


class AuthConfig(BaseModel):
    """Credentials injected into remote requests.

    Secret fields hold either a literal value or a ``$NAME`` reference that
    is resolved from the environment on every call.
    """

    model_config = ConfigDict(extra="forbid")

    type: Literal["bearer", "apikey", "basic"]
    token: str | None = None
    key: str | None = None
    header: str = "X-API-Key"
    username: str | None = None
    password: str | None = None

    @model_validator(mode="after")
    def _check_required_fields(self) -> Self:
        required = {
            "bearer": ("token",),
            "apikey": ("key",),
            "basic": ("username", "password"),
        }[self.type]
        missing = [name for name in required if getattr(self, name) is None]
        if missing:
            raise ValueError(
                f"'{self.type}' auth requires: {', '.join(missing)}"
            )
        return self


class ServerConfig(BaseModel):
    """One named server: a process descriptor or a remote descriptor."""

    model_config = ConfigDict(extra="ignore")

    # Process descriptor
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    # Remote descriptor
    url: str | None = None
    transport: TransportKind | None = None
    auth: AuthConfig | None = None

    timeout: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    """
    Per-request timeout in milliseconds.
    """

    @model_validator(mode="after")
    def _check_descriptor(self) -> Self:
        if (self.command is None) == (self.url is None):
            raise ValueError("server needs exactly one of 'command' or 'url'")
        if self.url is not None and not self.url.startswith(("http://", "https://")):
            raise ValueError("'url' must be a valid HTTP URL")
        if self.transport is TransportKind.STDIO and self.command is None:
            raise ValueError("'stdio' transport requires 'command'")
        if self.transport in (TransportKind.HTTP, TransportKind.SSE) and self.url is None:
            raise ValueError(f"'{self.transport.value}' transport requires 'url'")
        return self

    @property
    def is_process(self) -> bool:
        return self.command is not None

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000


class BridgeConfig(BaseModel):
    """The configuration document: named servers."""

    servers: dict[str, ServerConfig] = Field(default_factory=dict)

    def get_server(self, name: str) -> ServerConfig | None:
        return self.servers.get(name)


def load_config(path: str | Path) -> BridgeConfig:
    """Load and validate a JSON configuration document.

    A missing file yields an empty configuration.

    Raises:
        ConfigError: If the file is not valid JSON or fails validation
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning(f"Config file {path} not found, no servers configured")
        return BridgeConfig()

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e

    try:
        config = BridgeConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {path}: {e}") from e

    logger.info(f"Loaded configuration from {path}")
    return config


def server_from_command(spec: str) -> tuple[str, ServerConfig]:
    """Build a named process server from a command-line spec.

    ``@scope/package`` runs through ``npx``; anything else is split into a
    command and its arguments, and the command doubles as the server name.
    """
    spec = spec.strip()
    if not spec:
        raise ConfigError("Server spec must not be empty")

    if spec.startswith("@"):
        return spec, ServerConfig(command="npx", args=[spec])

    parts = shlex.split(spec)
    return parts[0], ServerConfig(command=parts[0], args=parts[1:])
