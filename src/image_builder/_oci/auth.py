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

"""Registry credentials handed to the build tools.

Both backends read credentials from `config.json` in the Docker config
directory. When that file is missing, it can be created from the
`DOCKER_USERNAME`, `DOCKER_PASSWORD` and optional `DOCKER_REGISTRY`
environment variables.
"""

from __future__ import annotations

import base64
from collections.abc import Iterable
import json
import logging
import pathlib

from image_builder._oci import registry as oci_registry
from image_builder._settings import Settings
from image_builder.errors import ConfigurationError


logger = logging.getLogger(__name__)

DOCKER_HUB_LEGACY = "https://index.docker.io/v1/"
COMMON_REGISTRIES = (
    oci_registry.DOCKER_HUB,
    DOCKER_HUB_LEGACY,
    "quay.io",
    "ghcr.io",
)


def encode_auth(username: str, password: str) -> str:
    """Returns the base64 `user:password` form used in `config.json`."""
    return base64.b64encode(f"{username}:{password}".encode()).decode()


def _registries(registry: str, destinations: Iterable[str]) -> list[str]:
    if registry:
        hosts = [oci_registry.normalize_registry(registry)]
    else:
        hosts = [
            oci_registry.normalize_registry(
                oci_registry.extract_registry(destination)
            )
            for destination in destinations
        ]
        if not hosts:
            return list(COMMON_REGISTRIES)

    result = []
    for host in hosts:
        if host not in result:
            result.append(host)
        if host == oci_registry.DOCKER_HUB and DOCKER_HUB_LEGACY not in result:
            result.append(DOCKER_HUB_LEGACY)
    return result


def _describe_existing(path: pathlib.Path, destinations: Iterable[str]) -> None:
    try:
        config = json.loads(path.read_text())
    except OSError as e:
        raise ConfigurationError(f"failed to read {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"invalid Docker config JSON: {e}") from e
    if not isinstance(config, dict):
        raise ConfigurationError(f"invalid Docker config JSON in {path}")

    auths = config.get("auths") or {}
    helpers = config.get("credHelpers") or {}
    store = config.get("credsStore", "")
    direct = [
        name
        for name, entry in auths.items()
        if isinstance(entry, dict)
        and (entry.get("auth") or entry.get("username"))
    ]
    for name in direct:
        logger.debug("Found credentials for: %s", name)
    for name, helper in helpers.items():
        logger.debug("Found credential helper '%s' for: %s", helper, name)
    if direct or helpers or store:
        logger.info(
            "Authentication configured: %d direct auths, %d helpers, "
            "global store: %s",
            len(direct),
            len(helpers),
            bool(store),
        )
    else:
        logger.debug(
            "Docker config exists but contains no credentials "
            "(using anonymous access)"
        )

    for destination in destinations:
        registry = oci_registry.extract_registry(destination)
        if oci_registry.is_cloud_registry(registry):
            logger.debug(
                "Detected cloud registry %s; make sure its credential "
                "helper is installed",
                registry,
            )


def setup_auth(
    settings: Settings, destinations: Iterable[str] = ()
) -> pathlib.Path | None:
    """Makes sure registry credentials are in place before a build.

    An existing `config.json` is checked and used as is. Otherwise, when
    both `DOCKER_USERNAME` and `DOCKER_PASSWORD` are set, one is written
    with an entry for `DOCKER_REGISTRY`, or for each destination registry
    when that is unset, or for the common public registries when there
    are no destinations either. Docker Hub also gets its legacy key.

    Args:
        settings: Supplies the auth file location and the environment.
        destinations: Image references that will be pushed.

    Returns:
        The path of the file written, or None if nothing was written.

    Raises:
        ConfigurationError: If an existing file is not valid JSON, or the
          new file cannot be written.
    """
    destinations = list(destinations)
    path = settings.auth_file
    logger.debug("Looking for Docker config at: %s", path)
    if path.exists():
        _describe_existing(path, destinations)
        return None

    username = settings.environ.get("DOCKER_USERNAME", "")
    password = settings.environ.get("DOCKER_PASSWORD", "")
    if not username or not password:
        logger.debug("No authentication configured (OK for public registries)")
        return None

    logger.info("Creating Docker config from environment variables")
    auth = encode_auth(username, password)
    registries = _registries(
        settings.environ.get("DOCKER_REGISTRY", ""), destinations
    )
    content = {"auths": {registry: {"auth": auth} for registry in registries}}
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(mode=0o600)
        path.write_text(json.dumps(content, indent=2))
    except OSError as e:
        raise ConfigurationError(
            f"failed to create Docker config from environment: {e}"
        ) from e
    logger.info("Created Docker config at: %s", path)
    return path
