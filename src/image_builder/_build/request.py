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

"""The declarative description of a single image build."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
import enum

from image_builder.errors import ConfigurationError


DEFAULT_DOCKERFILE = "Dockerfile"
DEFAULT_COSIGN_KEY = "/etc/cosign/cosign.key"
DEFAULT_COSIGN_PASSWORD_ENV = "COSIGN_PASSWORD"

ATTESTATION_MODES = ("off", "min", "max")
ATTESTATION_KINDS = ("sbom", "provenance")


class OutputMode(enum.Enum):
    """Where the built image ends up. The modes are mutually exclusive."""

    TAR = "tar"
    PUSH = "push"
    LOCAL = "local"


@dataclass(frozen=True)
class AttestationDeclaration:
    """One structured attestation request, e.g. `type=sbom,generator=x`.

    Attributes:
        kind: Either `sbom` or `provenance`.
        params: Unordered attestation parameters.
    """

    kind: str
    params: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, value: str) -> AttestationDeclaration:
        """Parses the comma separated `key=value` form.

        Raises:
            ConfigurationError: If a part lacks `=`, or `type` is missing
              or unknown.
        """
        kind = ""
        params: dict[str, str] = {}
        for part in value.split(","):
            part = part.strip()
            if not part:
                continue
            key, sep, val = part.partition("=")
            if not sep:
                raise ConfigurationError(
                    f"invalid attestation parameter {part!r} in {value!r}: "
                    "expected key=value"
                )
            key, val = key.strip(), val.strip()
            if key == "type":
                kind = val
            else:
                params[key] = val

        if not kind:
            raise ConfigurationError(
                f"attestation {value!r} is missing type=sbom|provenance"
            )
        if kind not in ATTESTATION_KINDS:
            raise ConfigurationError(
                f"unknown attestation type {kind!r} "
                "(supported: sbom, provenance)"
            )
        return cls(kind, params)


@dataclass(frozen=True)
class SigningOptions:
    """Whether and how to sign pushed images with cosign."""

    enabled: bool = False
    key_path: str = DEFAULT_COSIGN_KEY
    password_env: str = DEFAULT_COSIGN_PASSWORD_ENV


@dataclass(frozen=True)
class BuildRequest:
    """Everything needed to build, export, push and sign one image.

    Build arguments, labels and destinations are unordered on input; the
    `sorted_*` accessors give the order used on command lines so that
    equal requests yield identical invocations.

    Attributes:
        dockerfile: Path to the Dockerfile, relative to the context unless
          absolute.
        destinations: Image references to tag and push.
        target: Multi-stage target to build.
        build_args: Build-time variables. An empty value asks the backend
          to take the value from its own environment.
        labels: Image labels.
        platform: Target platform, e.g. `linux/arm64`.
        cache: Whether layer caching is requested.
        cache_dir: Cache directory hint. Accepted for compatibility with
          existing invocations; neither backend has a flag for it, so
          caching is controlled by `cache` alone.
        storage_driver: Buildah storage driver.
        insecure: Skip TLS verification for every registry.
        insecure_pull: Skip TLS verification when pulling base images.
        insecure_registries: Registries reached without TLS verification.
        registry_certificate: Directory with registry CA certificates.
        image_download_retry: Retries for base image pulls.
        push_retry: Attempts per destination when pushing.
        no_push: Build without pushing.
        tar_path: Export the image to this archive instead of pushing.
        digest_file: Write the image digest here.
        image_name_with_digest_file: Write `image@digest` here.
        image_name_tag_with_digest_file: Write JSON image/digest here.
        reproducible: Produce a bit-for-bit reproducible image.
        timestamp: Source date epoch used by reproducible builds.
        attestation: Simple attestation mode (`off`, `min`, `max`).
        attestations: Structured attestation declarations.
        buildkit_opts: Raw BuildKit `--opt` values.
        signing: cosign signing options.
    """

    dockerfile: str = DEFAULT_DOCKERFILE
    destinations: tuple[str, ...] = ()
    target: str = ""
    build_args: Mapping[str, str] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)
    platform: str = ""
    cache: bool = False
    cache_dir: str = ""
    storage_driver: str = ""
    insecure: bool = False
    insecure_pull: bool = False
    insecure_registries: tuple[str, ...] = ()
    registry_certificate: str = ""
    image_download_retry: int = 0
    push_retry: int = 0
    no_push: bool = False
    tar_path: str = ""
    digest_file: str = ""
    image_name_with_digest_file: str = ""
    image_name_tag_with_digest_file: str = ""
    reproducible: bool = False
    timestamp: str = ""
    attestation: str = ""
    attestations: tuple[AttestationDeclaration, ...] = ()
    buildkit_opts: tuple[str, ...] = ()
    signing: SigningOptions = field(default_factory=SigningOptions)

    @property
    def use_cache(self) -> bool:
        return self.cache and not self.reproducible

    @property
    def source_date_epoch(self) -> str | None:
        if self.reproducible and self.timestamp:
            return self.timestamp
        return None

    @property
    def sorted_destinations(self) -> list[str]:
        return sorted(self.destinations)

    @property
    def sorted_build_args(self) -> list[tuple[str, str]]:
        return sorted(self.build_args.items())

    @property
    def sorted_labels(self) -> list[tuple[str, str]]:
        return sorted(self.labels.items())

    @property
    def output_mode(self) -> OutputMode:
        if self.tar_path:
            return OutputMode.TAR
        if not self.no_push:
            return OutputMode.PUSH
        return OutputMode.LOCAL

    @property
    def insecure_tls(self) -> bool:
        return (
            self.insecure
            or self.insecure_pull
            or bool(self.insecure_registries)
        )

    def is_insecure_destination(self, destination: str) -> bool:
        """Whether TLS verification is skipped when pushing `destination`."""
        return self.insecure or any(
            destination.startswith(registry)
            for registry in self.insecure_registries
        )
