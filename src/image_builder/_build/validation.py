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

"""Structural checks on build inputs before they reach a command line."""

from __future__ import annotations

from collections.abc import Mapping
import os
import re

from image_builder._build.request import BuildRequest
from image_builder._oci.registry import ImageReference
from image_builder.errors import ConfigurationError


MAX_KEY_LENGTH = 128
MAX_VALUE_BYTES = 4096
MAX_IMAGE_NAME_LENGTH = 255
MAX_SOCKET_PATH_BYTES = 108

_REPOSITORY = re.compile(
    r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
    r"(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$"
)
_HOST = re.compile(
    r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)*(?::[0-9]{1,5})?$"
)


def _check_no_null(what: str, value: str) -> None:
    if "\x00" in value:
        raise ConfigurationError(f"{what} contains null byte")


def _check_pairs(what: str, pairs: Mapping[str, str]) -> None:
    for key, value in pairs.items():
        if len(key) > MAX_KEY_LENGTH:
            raise ConfigurationError(
                f"{what} key {key!r} too long: {len(key)} characters "
                f"(max {MAX_KEY_LENGTH})"
            )
        _check_no_null(f"{what} key {key!r}", key)
        size = len(value.encode())
        if size > MAX_VALUE_BYTES:
            raise ConfigurationError(
                f"{what} value for {key!r} too long: {size} bytes "
                f"(max {MAX_VALUE_BYTES})"
            )
        _check_no_null(f"{what} value for {key!r}", value)


def validate_image_name(name: str) -> None:
    """Checks that `name` is a well-formed image reference.

    Raises:
        ConfigurationError: If it is not.
    """
    if not name:
        raise ConfigurationError("image name cannot be empty")
    if len(name) > MAX_IMAGE_NAME_LENGTH:
        raise ConfigurationError(
            f"image name too long: {len(name)} characters "
            f"(max {MAX_IMAGE_NAME_LENGTH})"
        )
    _check_no_null("image name", name)
    try:
        ref = ImageReference.parse(name)
    except ValueError as e:
        raise ConfigurationError(f"invalid image name {name!r}: {e}") from e
    if ref.registry and not _HOST.match(ref.registry):
        raise ConfigurationError(f"invalid registry host in {name!r}")
    if not _REPOSITORY.match(ref.repository):
        raise ConfigurationError(
            f"invalid image name format: {ref.repository}"
        )


def validate_request(request: BuildRequest) -> None:
    """Rejects requests whose values cannot be put on a command line.

    Raises:
        ConfigurationError: On the first invalid value.
    """
    _check_pairs("build arg", request.build_args)
    _check_pairs("label", request.labels)

    if len(request.target) > MAX_KEY_LENGTH:
        raise ConfigurationError(
            f"target name too long: {len(request.target)} characters "
            f"(max {MAX_KEY_LENGTH})"
        )
    _check_no_null("target name", request.target)
    _check_no_null("platform", request.platform)
    _check_no_null("dockerfile path", request.dockerfile)
    _check_no_null("tar path", request.tar_path)
    for what, value in (
        ("cache dir", request.cache_dir),
        ("storage driver", request.storage_driver),
        ("registry certificate", request.registry_certificate),
        ("timestamp", request.timestamp),
        ("attestation mode", request.attestation),
        ("digest file", request.digest_file),
        ("image name digest file", request.image_name_with_digest_file),
        ("image tag digest file", request.image_name_tag_with_digest_file),
        ("cosign key", request.signing.key_path),
        ("cosign password variable", request.signing.password_env),
    ):
        _check_no_null(what, value)
    for registry in request.insecure_registries:
        _check_no_null("insecure registry", registry)
    for opt in request.buildkit_opts:
        _check_no_null("buildkit option", opt)
    for declaration in request.attestations:
        _check_pairs(f"{declaration.kind} attestation", declaration.params)

    for destination in request.destinations:
        validate_image_name(destination)


def validate_socket_path(path: str) -> None:
    """Checks that `path` can be used as a unix socket address.

    Raises:
        ConfigurationError: If it cannot.
    """
    if not path:
        raise ConfigurationError("socket path cannot be empty")
    _check_no_null("socket path", path)
    if ".." in path.split("/"):
        raise ConfigurationError("socket path contains '..' sequence")
    clean = os.path.normpath(path)
    if len(clean.encode()) > MAX_SOCKET_PATH_BYTES:
        raise ConfigurationError(
            f"socket path too long: {len(clean.encode())} bytes "
            f"(max {MAX_SOCKET_PATH_BYTES})"
        )
    if not os.path.isabs(clean):
        raise ConfigurationError(f"socket path must be absolute: {clean}")
