# Copyright 2026 The Image Builder Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Classification and rewriting of git build-context URLs.

All functions here are pure string transformations; nothing touches the
network or the filesystem.
"""

from __future__ import annotations

from collections.abc import Mapping
import logging
import re
from typing import TYPE_CHECKING
import urllib.parse


if TYPE_CHECKING:
    from image_builder._git.context import GitConfig


logger = logging.getLogger(__name__)

KNOWN_HOSTS = ("github.com", "gitlab.com", "bitbucket.org")
DEFAULT_TOKEN_USER = "oauth2"
MASK = "**REDACTED**"

_ENV_PATTERN = re.compile(
    r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)"
)
_SSH_SHORTHAND = re.compile(r"^git@(?P<host>[^:/]+):(?P<path>.+)$")


def expand_env(value: str, environ: Mapping[str, str]) -> str:
    """Substitutes `$VAR` and `${VAR}` in `value`; unset variables vanish."""

    def _lookup(match: re.Match[str]) -> str:
        return environ.get(match.group(1) or match.group(2), "")

    return _ENV_PATTERN.sub(_lookup, value)


def is_git_url(url: str) -> bool:
    """Whether `url` names a git repository rather than a local path."""
    if url.startswith(("git://", "git@")):
        return True
    if any(url.startswith(f"https://{host}/") for host in KNOWN_HOSTS):
        return True
    if url.split("#", 1)[0].endswith(".git"):
        return True
    if "git." in url:
        return True
    return url.startswith("https://") and "/" in url[len("https://") :]


def normalize_url(url: str, prefer_ssh: bool = False) -> str:
    """Rewrites legacy `git://` and SSH shorthand URLs to HTTPS.

    `git://` is only rewritten for hosting providers that disabled the
    protocol; other hosts may be private servers that still serve it.
    """
    if url.startswith("git://"):
        host = urllib.parse.urlsplit(url).hostname or ""
        if host in KNOWN_HOSTS:
            logger.warning(
                "Converted deprecated git:// URL to https:// "
                "(git:// is disabled on %s)",
                host,
            )
            return "https://" + url[len("git://") :]
        logger.warning(
            "Using git:// URL %s; most servers have disabled this protocol, "
            "try https:// if the build fails",
            url,
        )
        return url

    match = _SSH_SHORTHAND.match(url)
    if match and not prefer_ssh:
        normalized = f"https://{match['host']}/{match['path']}"
        logger.debug("Rewrote SSH URL %s to %s", url, normalized)
        return normalized
    return url


def add_token(url: str, token: str, user: str = "") -> str:
    """Embeds `user:token@` in an HTTPS URL without credentials."""
    token = token.strip()
    if not token:
        logger.warning("Git token is empty, cloning without credentials")
        return url
    if not url.startswith("https://"):
        return url
    if urllib.parse.urlsplit(url).username is not None:
        logger.debug("Git URL already carries credentials, keeping them")
        return url
    user = user or DEFAULT_TOKEN_USER
    return f"https://{user}:{token}@{url[len('https://') :]}"


def format_native_ref(
    url: str, git_config: GitConfig, sub_path: str | None = None
) -> str:
    """Formats `url` as a BuildKit git context: `url[#ref[:subdir]]`."""
    ref = git_config.revision or git_config.branch or ""
    sub_path = sub_path or ""
    if sub_path:
        return f"{url}#{ref}:{sub_path}"
    if ref:
        return f"{url}#{ref}"
    return url


def mask_token(url: str) -> str:
    """Hides the password component of `url` for logging."""
    if "://" not in url:
        return url
    parts = urllib.parse.urlsplit(url)
    if parts.password is None:
        return url
    userinfo, _, hostinfo = parts.netloc.rpartition("@")
    user = userinfo.split(":", 1)[0]
    return urllib.parse.urlunsplit(
        parts._replace(netloc=f"{user}:{MASK}@{hostinfo}")
    )
