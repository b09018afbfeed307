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

"""Pushing Buildah images to registries, with retry."""

from __future__ import annotations

from collections.abc import Callable
import logging
import os
import pathlib
import subprocess
import time

from image_builder._build import digest as digest_lib
from image_builder._build.backend import Backend
from image_builder._build.request import BuildRequest
from image_builder._oci import registry as oci_registry
from image_builder._settings import Settings
from image_builder.errors import AuthenticationError
from image_builder.errors import BuildError
from image_builder.errors import PushError


logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]

AUTH_MARKERS = (
    "insufficient_scope",
    "authentication required",
    "unauthorized",
)
NETWORK_MARKERS = ("no such host", "connection refused")

BACKOFF_SECONDS = 2


def remediation(registry: str) -> str:
    """Instructions for fixing push credentials for `registry`."""
    return (
        f"Possible solutions:\n"
        f"1. Login to the registry:\n"
        f"   docker login {registry}\n"
        f"\n"
        f"2. Mount Docker config in Kubernetes:\n"
        f"   kubectl create secret docker-registry regcred \\\n"
        f"     --docker-server={registry} \\\n"
        f"     --docker-username=<username> \\\n"
        f"     --docker-password=<password>\n"
        f"\n"
        f"3. Use environment variables:\n"
        f"   export DOCKER_USERNAME=<username>\n"
        f"   export DOCKER_PASSWORD=<password>\n"
        f"   export DOCKER_REGISTRY={registry}\n"
    )


def _push_args(
    request: BuildRequest, destination: str, auth_file: str
) -> list[str]:
    args = ["buildah", "push"]
    if auth_file:
        args += ["--authfile", auth_file]
    if request.is_insecure_destination(destination):
        args.append("--tls-verify=false")
    if request.registry_certificate:
        args += ["--cert-dir", request.registry_certificate]
    args.append(destination)
    return args


def _push_env(
    request: BuildRequest, settings: Settings, auth_file: str
) -> dict[str, str]:
    env = settings.child_env()
    if auth_file:
        env["REGISTRY_AUTH_FILE"] = auth_file
    if request.storage_driver:
        env["STORAGE_DRIVER"] = request.storage_driver
    return env


def push_images(
    request: BuildRequest,
    backend: Backend,
    *,
    settings: Settings,
    auth_file: str = "",
    runner: Runner = subprocess.run,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, str]:
    """Pushes every destination and returns the digests that were reported.

    BuildKit pushes during the build, so nothing happens for it. Failures
    are retried `request.push_retry` times in total (once when unset)
    with a linearly growing pause, except credential failures which abort
    at once.

    Raises:
        AuthenticationError: If the registry rejected the credentials.
        PushError: If a destination still fails after the last attempt.
    """
    if backend is Backend.BUILDKIT:
        logger.debug("Skipping push step, BuildKit pushes during the build")
        return {}

    digests: dict[str, str] = {}
    retries = max(request.push_retry, 1)
    env = _push_env(request, settings, auth_file)

    for destination in request.destinations:
        registry = oci_registry.normalize_registry(
            oci_registry.extract_registry(destination)
        )
        if oci_registry.is_cloud_registry(registry):
            logger.debug("Detected cloud registry: %s", registry)

        args = _push_args(request, destination, auth_file)
        logger.info("Pushing image: %s", destination)
        last_error = ""
        for attempt in range(retries):
            if attempt:
                logger.info(
                    "Retrying push (attempt %d/%d)...", attempt + 1, retries
                )
                sleep(attempt * BACKOFF_SECONDS)

            result = runner(args, env=env, capture_output=True, text=True)
            if result.stdout:
                logger.debug("Push stdout: %s", result.stdout)
            if result.returncode == 0:
                logger.debug("Push stderr: %s", result.stderr)
                digest = digest_lib.extract_push_digest(result.stderr)
                if digest:
                    digests[destination] = digest
                    logger.debug(
                        "Extracted digest for %s: %s", destination, digest
                    )
                logger.info("Successfully pushed: %s", destination)
                last_error = ""
                break

            last_error = result.stderr.strip() or (
                f"buildah push exited with status {result.returncode}"
            )
            logger.error("Push stderr: %s", result.stderr)
            if any(marker in result.stderr for marker in AUTH_MARKERS):
                logger.warning("Authentication failed for %s", destination)
                raise AuthenticationError(
                    destination, last_error, remediation(registry)
                )
            if any(marker in result.stderr for marker in NETWORK_MARKERS):
                logger.warning(
                    "Network error pushing to %s (attempt %d/%d)",
                    destination,
                    attempt + 1,
                    retries,
                )
            else:
                logger.warning("Push attempt %d failed", attempt + 1)

        if last_error:
            raise PushError(
                f"failed to push {destination} after {retries} attempts: "
                f"{last_error}"
            )

    return digests


def export_tar(
    request: BuildRequest,
    *,
    settings: Settings,
    runner: Runner = subprocess.run,
) -> None:
    """Writes the first destination's image to `request.tar_path`.

    Pushing by name can fail for some storage drivers, in which case the
    image is looked up by ID and pushed again.

    Raises:
        BuildError: If the archive could not be written.
    """
    if not request.destinations:
        raise BuildError("no destination specified for tar export")

    image = request.destinations[0]
    archive = f"docker-archive:{request.tar_path}"
    env = _push_env(request, settings, "")
    logger.info("Exporting image to tar: %s", request.tar_path)

    result = runner(
        ["buildah", "push", image, archive],
        env=env,
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        logger.debug("Export by name failed: %s", result.stderr)
        lookup = runner(
            [
                "buildah",
                "images",
                "--format",
                "{{.ID}}",
                "--filter",
                f"reference={image}",
            ],
            env=env,
            capture_output=True,
            text=True,
        )
        image_ids = lookup.stdout.split() if lookup.returncode == 0 else []
        if not image_ids:
            raise BuildError(
                f"failed to export {image} to tar: {result.stderr.strip()}"
            )
        logger.debug("Found image ID: %s", image_ids[0])
        retry = runner(
            ["buildah", "push", image_ids[0], archive],
            env=env,
            capture_output=True,
            text=True,
        )
        if retry.returncode != 0:
            raise BuildError(
                "tar export failed by name and by ID: "
                f"{result.stderr.strip()}; {retry.stderr.strip()}"
            )

    tar_path = pathlib.Path(request.tar_path)
    if not tar_path.is_file():
        raise BuildError(f"tar file was not created: {tar_path}")
    if os.path.getsize(tar_path) == 0:
        raise BuildError(f"tar file is empty: {tar_path}")
    logger.info("Image exported to: %s", tar_path)
