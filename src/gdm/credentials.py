"""Credentials management for gdm.

Credentials live in ``~/.gdm/credentials.toml``::

    [git]
    username = "build-bot"
    token = "..."

    [work_tracking]
    token = "..."

Environment variables take priority over the file: ``GDM_GIT_USERNAME``,
``GDM_GIT_TOKEN`` and ``GDM_AZURE_TOKEN``.
"""

from __future__ import annotations

import os
import stat
import sys
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import tomlkit
from pydantic import BaseModel, Field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore


CREDENTIALS_FILENAME = "credentials.toml"
USER_CONFIG_DIR = ".gdm"

ENV_GIT_USERNAME = "GDM_GIT_USERNAME"
ENV_GIT_TOKEN = "GDM_GIT_TOKEN"
ENV_AZURE_TOKEN = "GDM_AZURE_TOKEN"


class GitCredentials(BaseModel):
    """Username/token pair used for authenticated fetch and push."""

    username: str = Field(
        default="",
        description="Username sent to the git host",
    )
    token: str = Field(
        default="",
        description="Personal access token used as the password",
    )


class WorkTrackingCredentials(BaseModel):
    """Work-tracking service credentials."""

    token: str = Field(
        default="",
        description="Personal access token for the work-tracking REST API",
    )


class Credentials(BaseModel):
    """All gdm credentials."""

    git: GitCredentials = Field(default_factory=GitCredentials)
    work_tracking: WorkTrackingCredentials = Field(default_factory=WorkTrackingCredentials)


@dataclass(frozen=True)
class Credential:
    """Credential handed to the git provider for a single operation."""

    username: str
    token: str

    def __repr__(self) -> str:
        return f"Credential(username={self.username!r}, token='***')"


# Invoked on every authenticated operation; the engine never caches the result.
CredentialSupplier = Callable[[], Optional[Credential]]


def _get_user_credentials_path() -> Path:
    """Get path to user credentials file."""
    return Path.home() / USER_CONFIG_DIR / CREDENTIALS_FILENAME


def _secure_file_permissions(path: Path) -> None:
    """Set secure file permissions (owner read/write only).

    On Windows, this is a no-op as permissions work differently.
    """
    if os.name == "posix":
        try:
            os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)  # 0o600
        except OSError as e:
            warnings.warn(
                f"Could not set secure permissions on {path}: {e}. "
                "Credentials file may be readable by other users.",
                UserWarning,
            )


def _load_toml_credentials(path: Path) -> Dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def load_credentials(path: Optional[Path] = None) -> Credentials:
    """Load credentials from the TOML file.

    A missing file yields empty credentials; an unreadable one warns and
    yields empty credentials as well.
    """
    toml_path = path or _get_user_credentials_path()
    if not toml_path.exists():
        return Credentials()

    try:
        data = _load_toml_credentials(toml_path)
        return Credentials.model_validate(data)
    except Exception as e:
        warnings.warn(f"Error loading credentials: {e}", UserWarning)
        return Credentials()


def save_credentials(creds: Credentials, path: Optional[Path] = None) -> Path:
    """Save credentials to the TOML file with owner-only permissions."""
    toml_path = path or _get_user_credentials_path()
    toml_path.parent.mkdir(parents=True, exist_ok=True)

    doc = tomlkit.document()
    doc.add(tomlkit.comment(" gdm credentials"))
    doc.add(tomlkit.comment(" Keep this file secure - do not commit to version control"))
    doc.add(tomlkit.nl())

    if creds.git.username or creds.git.token:
        git = tomlkit.table()
        if creds.git.username:
            git.add("username", creds.git.username)
        if creds.git.token:
            git.add("token", creds.git.token)
        doc.add("git", git)

    if creds.work_tracking.token:
        work_tracking = tomlkit.table()
        work_tracking.add("token", creds.work_tracking.token)
        doc.add("work_tracking", work_tracking)

    with open(toml_path, "w") as f:
        f.write(tomlkit.dumps(doc))

    _secure_file_permissions(toml_path)
    return toml_path


def git_credential_supplier(
    username: Optional[str] = None,
    token: Optional[str] = None,
    path: Optional[Path] = None,
) -> CredentialSupplier:
    """Build a supplier that resolves git credentials on each call.

    Priority: explicit arguments > environment > credentials file. Returns
    None from the supplier when no token is known, so git falls back to
    whatever credential helper the user configured.
    """

    def supply() -> Optional[Credential]:
        resolved_user = username or os.getenv(ENV_GIT_USERNAME)
        resolved_token = token or os.getenv(ENV_GIT_TOKEN)
        if not resolved_token:
            creds = load_credentials(path)
            resolved_user = resolved_user or creds.git.username
            resolved_token = creds.git.token
        if not resolved_token:
            return None
        return Credential(username=resolved_user or "", token=resolved_token)

    return supply


def get_work_tracking_token(path: Optional[Path] = None) -> Optional[str]:
    """Get the work-tracking token from environment or credentials file.

    Priority: Environment > Credentials file
    """
    env_token = os.getenv(ENV_AZURE_TOKEN)
    if env_token:
        return env_token

    creds = load_credentials(path)
    return creds.work_tracking.token or None
