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

"""Command lines for the two build backends.

Both builders turn a `BuildRequest` and a prepared `BuildContext` into the
argument list of one backend binary (without the binary itself). Maps and
destination lists are emitted in sorted order so that equal requests give
byte-identical command lines.
"""

from __future__ import annotations

import abc
from collections.abc import Sequence
import logging
import os

from image_builder._build import attestation
from image_builder._build.backend import Backend
from image_builder._build.request import BuildRequest
from image_builder._build.request import OutputMode
from image_builder._git import url as git_url
from image_builder._git.context import BuildContext


logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"

SENSITIVE_KEYS = (
    "GIT_PASSWORD",
    "GIT_TOKEN",
    "PASSWORD",
    "TOKEN",
    "API_KEY",
    "SECRET",
    "CREDENTIALS",
)


class CommandBuilder(abc.ABC):
    """Builds the argument list for one backend."""

    binary: str

    @abc.abstractmethod
    def build_args(
        self, request: BuildRequest, context: BuildContext
    ) -> list[str]:
        """Returns the arguments for `binary` that build `request`."""


class BuildahCommand(CommandBuilder):
    """`buildah bud` invocations."""

    binary = "buildah"

    def build_args(
        self, request: BuildRequest, context: BuildContext
    ) -> list[str]:
        if context.path is None:
            raise ValueError("buildah needs a local build context")

        dockerfile = request.dockerfile
        if not os.path.isabs(dockerfile):
            dockerfile = os.path.join(context.path, dockerfile)
        args = ["bud", "-f", dockerfile]

        for key, value in request.sorted_build_args:
            args += ["--build-arg", f"{key}={value}" if value else key]
        for key, value in request.sorted_labels:
            args += ["--label", f"{key}={value}"]
        if request.target:
            args += ["--target", request.target]
        if request.platform:
            args += ["--platform", request.platform]

        args.append("--layers" if request.use_cache else "--no-cache")

        if request.image_download_retry > 0:
            args += ["--retry", str(request.image_download_retry)]

        epoch = request.source_date_epoch
        if epoch is not None:
            args += ["--timestamp", epoch]
            args += ["--build-arg", f"SOURCE_DATE_EPOCH={epoch}"]

        if request.insecure_tls:
            args.append("--tls-verify=false")

        for destination in request.sorted_destinations:
            args += ["-t", destination]

        args.append(str(context.path))
        return args


class BuildKitCommand(CommandBuilder):
    """`buildctl build` invocations against the dockerfile frontend."""

    binary = "buildctl"

    def build_args(
        self, request: BuildRequest, context: BuildContext
    ) -> list[str]:
        args = ["build", "--frontend", "dockerfile.v0"]
        args += ["--opt", f"filename={self._dockerfile(request, context)}"]

        if context.git_ref is not None:
            args += ["--opt", f"context={context.git_ref}"]
            args += ["--opt", f"dockerfile={context.git_ref}"]
        else:
            args += ["--local", f"context={context.path}"]
            args += ["--local", f"dockerfile={context.path}"]

        for key, value in request.sorted_build_args:
            arg = f"build-arg:{key}={value}" if value else f"build-arg:{key}"
            args += ["--opt", arg]
        for key, value in request.sorted_labels:
            args += ["--opt", f"label:{key}={value}"]
        if request.target:
            args += ["--opt", f"target={request.target}"]
        if request.platform:
            args += ["--opt", f"platform={request.platform}"]

        epoch = request.source_date_epoch
        if epoch is not None:
            args += ["--opt", f"source-date-epoch={epoch}"]
            args += ["--opt", f"build-arg:SOURCE_DATE_EPOCH={epoch}"]

        if not request.use_cache:
            args.append("--no-cache")

        for output in self._outputs(request):
            args += ["--output", output]

        attestations = attestation.assemble(
            request.attestation, request.attestations, request.buildkit_opts
        )
        for opt in attestations.build_args + attestations.opts:
            args += ["--opt", opt]
        return args

    @staticmethod
    def _dockerfile(request: BuildRequest, context: BuildContext) -> str:
        dockerfile = request.dockerfile
        if context.git_ref is not None or not os.path.isabs(dockerfile):
            return dockerfile
        base = context.original_path
        try:
            return os.path.relpath(dockerfile, base)
        except ValueError:
            return dockerfile

    @staticmethod
    def _outputs(request: BuildRequest) -> list[str]:
        suffix = ",rewrite-timestamp=true" if request.source_date_epoch else ""
        match request.output_mode:
            case OutputMode.TAR:
                return [f"type=docker,dest={request.tar_path}{suffix}"]
            case OutputMode.PUSH:
                push = "true"
            case OutputMode.LOCAL:
                push = "false"
        return [
            f"type=image,name={destination},push={push}{suffix}"
            for destination in request.sorted_destinations
        ]


def command_for(backend: Backend) -> CommandBuilder:
    """Returns the command builder for `backend`."""
    match backend:
        case Backend.BUILDKIT:
            return BuildKitCommand()
        case Backend.BUILDAH:
            return BuildahCommand()


def _is_sensitive(key: str) -> bool:
    key = key.upper()
    return any(marker in key for marker in SENSITIVE_KEYS)


def sanitize_command_args(args: Sequence[str]) -> list[str]:
    """Returns `args` with credentials hidden, for logging.

    Build arguments whose name contains a sensitive marker are redacted
    entirely, even when the name only happens to contain the marker.
    """
    sanitized = []
    previous = ""
    for arg in args:
        key, sep, value = arg.partition("=")
        if key in ("context", "dockerfile") and sep:
            arg = f"{key}={git_url.mask_token(value)}"
        elif key.startswith("build-arg:") and sep:
            if _is_sensitive(key.removeprefix("build-arg:")):
                arg = f"{key}={REDACTED}"
        elif previous == "--build-arg" and sep and _is_sensitive(key):
            arg = f"{key}={REDACTED}"
        else:
            arg = git_url.mask_token(arg)
        sanitized.append(arg)
        previous = arg
    return sanitized
