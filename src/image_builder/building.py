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

"""High level API for building container images.

The module builds an image from a local directory or git repository with
whichever backend is installed (BuildKit preferred, Buildah otherwise):

```python
request = image_builder.building.BuildRequest(
    destinations=("registry.example.com/team/app:1.0",),
)
image_builder.building.Builder().run(
    request, image_builder.building.GitConfig(context="/workspace")
)
```

Reproducible builds pin the image timestamp and disable caching:

```python
request = image_builder.building.BuildRequest(
    destinations=("registry.example.com/team/app:1.0",),
    reproducible=True,
    timestamp="1700000000",
)
```

Git contexts are cloned by BuildKit itself, or checked out locally for
Buildah:

```python
image_builder.building.Builder().run(
    request,
    image_builder.building.GitConfig(
        context="https://github.com/org/app.git",
        branch="main",
        sub_path="docker",
        token_file="/secrets/git-token",
    ),
)
```

Pushed images are signed with cosign when `request.signing.enabled` is set;
digests are written to the files named in the request.

Registry authentication uses the Docker credentials in `$DOCKER_CONFIG`
(`~/.docker/config.json` by default). When that file is missing it is
created from `DOCKER_USERNAME` and `DOCKER_PASSWORD`.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
import logging
import os
import shutil
import subprocess
import sys
import time

from image_builder._build import artifacts
from image_builder._build import daemon as daemon_lib
from image_builder._build import digest as digest_lib
from image_builder._build import push as push_lib
from image_builder._build import validation
from image_builder._build.backend import Backend
from image_builder._build.backend import require_backend
from image_builder._build.commands import command_for
from image_builder._build.commands import sanitize_command_args
from image_builder._build.request import AttestationDeclaration
from image_builder._build.request import BuildRequest
from image_builder._build.request import OutputMode
from image_builder._build.request import SigningOptions
from image_builder._git.context import BuildContext
from image_builder._git.context import GitConfig
from image_builder._git.context import prepare_context
from image_builder._oci import auth
from image_builder._oci import registry as oci_registry
from image_builder._settings import Settings
from image_builder._signing import cosign
from image_builder.errors import BuildError


__all__ = [
    "AttestationDeclaration",
    "BuildRequest",
    "BuildResult",
    "Builder",
    "GitConfig",
    "OutputMode",
    "SigningOptions",
    "build",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildResult:
    """Outcome of a successful build.

    Attributes:
        backend: The backend that ran the build.
        digests: Digests of pushed images, by destination.
        signed: References signed with cosign.
    """

    backend: Backend
    digests: dict[str, str] = field(default_factory=dict)
    signed: list[str] = field(default_factory=list)


def build(request: BuildRequest, git_config: GitConfig) -> BuildResult:
    """Builds `request` with settings taken from the process environment."""
    return Builder().run(request, git_config)


class Builder:
    """Runs builds with the detected backend.

    All process spawning goes through the injected callables, which
    default to the `subprocess`, `shutil` and `time` functions.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        launcher: Callable[..., subprocess.Popen] = subprocess.Popen,
        which: Callable[[str], str | None] = shutil.which,
        sleep: Callable[[float], None] = time.sleep,
        registry_client: oci_registry.OrasClient | None = None,
    ):
        """Initializes a builder.

        Args:
            settings: Filesystem locations; resolved from `os.environ` when
              not given.
            runner: Runs a command to completion, like `subprocess.run`.
            launcher: Starts the BuildKit daemon, like `subprocess.Popen`.
            which: Locates backend binaries, like `shutil.which`.
            sleep: Pauses between daemon polls and push retries.
            registry_client: Resolves digests for signing when the build
              output had none. Created on demand when not given.
        """
        self._settings = settings or Settings.from_environ()
        self._runner = runner
        self._launcher = launcher
        self._which = which
        self._sleep = sleep
        self._registry_client = registry_client

    def run(self, request: BuildRequest, git_config: GitConfig) -> BuildResult:
        """Builds, exports or pushes, records digests, and signs.

        Raises:
            BackendUnavailableError: If no backend is installed.
            ConfigurationError: If the request, context or registry
              credentials are invalid.
            DaemonStartError: If BuildKit cannot be started.
            GitError: If a git context cannot be checked out.
            BuildError: If the build itself fails.
            PushError: If pushing fails.
            SigningError: If cosign fails.
        """
        backend = require_backend(self._which)
        logger.info("Using builder: %s", backend.value.upper())
        auth.setup_auth(self._settings, request.destinations)

        with prepare_context(
            git_config, backend, self._settings, self._runner
        ) as context:
            validation.validate_request(request)
            match backend:
                case Backend.BUILDKIT:
                    digests = self._build_buildkit(request, context)
                case Backend.BUILDAH:
                    digests = self._build_buildah(request, context)

        try:
            artifacts.write_digest_files(request, digests)
        except OSError as e:
            logger.warning("Failed to save digest information: %s", e)

        # `buildah push` only reports the config digest; the manifest
        # digest has to come from the registry.
        signing_digests = digests if backend is Backend.BUILDKIT else {}
        signed = cosign.sign_images(
            request,
            signing_digests,
            settings=self._settings,
            runner=self._runner,
            resolver=self._resolver(request),
        )
        return BuildResult(backend, digests, signed)

    def _resolver(self, request: BuildRequest) -> cosign.Resolver | None:
        if not request.signing.enabled:
            return None
        if self._registry_client is None:
            self._registry_client = oci_registry.OrasClient(
                insecure=request.insecure,
                tls_verify=not request.insecure_tls,
            )
        return self._registry_client.resolve_digest

    def _insecure_registries(self, request: BuildRequest) -> list[str]:
        registries = set(request.insecure_registries)
        if request.insecure:
            for destination in request.destinations:
                ref = oci_registry.ImageReference.parse(destination)
                if ref.registry:
                    registries.add(ref.registry)
        return sorted(registries)

    def _build_buildkit(
        self, request: BuildRequest, context: BuildContext
    ) -> dict[str, str]:
        settings = self._settings
        logger.info("Starting BuildKit build...")
        logger.debug("BuildKit socket: unix://%s", settings.buildkit_socket)
        logger.debug("BuildKit config: %s", settings.buildkit_config)

        registries = self._insecure_registries(request)
        if registries:
            daemon_lib.ensure_insecure_registries(
                settings.buildkit_config, registries
            )

        args = command_for(Backend.BUILDKIT).build_args(request, context)

        def status_check(command: list[str]) -> bool:
            result = self._runner(command, capture_output=True, text=True)
            return result.returncode == 0

        daemon = daemon_lib.BuildKitDaemon(
            settings,
            launcher=self._launcher,
            status_check=status_check,
            sleep=self._sleep,
        )
        with daemon:
            daemon.mark_running()
            extra = {}
            if request.source_date_epoch is not None:
                extra["SOURCE_DATE_EPOCH"] = request.source_date_epoch
            env = daemon.client_env(**extra)

            logger.info("BuildKit build environment:")
            for name in ("BUILDKIT_HOST", "DOCKER_CONFIG", "SOURCE_DATE_EPOCH"):
                if name in env:
                    logger.info("  %s=%s", name, env[name])
            logger.info(
                "Executing: buildctl %s",
                " ".join(sanitize_command_args(args)),
            )
            if context.git_ref is not None and "@" in context.git_ref:
                logger.warning(
                    "BuildKit may expose git credentials in build logs; "
                    "prefer SSH authentication over HTTPS tokens"
                )

            result = self._runner(
                ["buildctl", *args], env=env, capture_output=True, text=True
            )
            sys.stdout.write(result.stdout or "")
            sys.stderr.write(result.stderr or "")
            if result.returncode != 0:
                raise BuildError(
                    f"buildkit build failed with exit code {result.returncode}"
                )
        logger.info("Build completed successfully")

        digests: dict[str, str] = {}
        if request.output_mode is OutputMode.PUSH:
            digest = digest_lib.extract_buildkit_digest(
                result.stdout or "", result.stderr or ""
            )
            if digest:
                for destination in request.destinations:
                    digests[destination] = digest
                logger.debug("Extracted digest: %s", digest)
            else:
                logger.warning("Could not extract digest from BuildKit output")
        return digests

    def _build_buildah(
        self, request: BuildRequest, context: BuildContext
    ) -> dict[str, str]:
        settings = self._settings
        if hasattr(os, "getuid") and os.getuid() == 0:
            logger.warning("Running as root (UID 0), using chroot isolation")
        logger.info("Starting buildah build...")

        args = command_for(Backend.BUILDAH).build_args(request, context)
        env = settings.child_env(DOCKER_CONFIG=str(settings.docker_config))
        env.setdefault("BUILDAH_ISOLATION", "chroot")
        if request.storage_driver:
            env["STORAGE_DRIVER"] = request.storage_driver

        logger.info("Buildah build environment:")
        for name in sorted(env):
            if name.startswith("BUILDAH_") or name in (
                "STORAGE_DRIVER",
                "DOCKER_CONFIG",
            ):
                logger.info("  %s=%s", name, env[name])
        logger.info(
            "Executing: buildah %s", " ".join(sanitize_command_args(args))
        )

        result = self._runner(["buildah", *args], env=env)
        if result.returncode != 0:
            raise BuildError(
                f"buildah build failed with exit code {result.returncode}"
            )
        logger.info("Build completed successfully")

        match request.output_mode:
            case OutputMode.TAR:
                push_lib.export_tar(
                    request, settings=settings, runner=self._runner
                )
                return {}
            case OutputMode.PUSH:
                auth_file = settings.auth_file
                return push_lib.push_images(
                    request,
                    Backend.BUILDAH,
                    settings=settings,
                    auth_file=str(auth_file) if auth_file.exists() else "",
                    runner=self._runner,
                    sleep=self._sleep,
                )
            case OutputMode.LOCAL:
                logger.info("No push requested, skipping image push")
                return {}
