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

"""Image references and a small OCI registry client built on oras-py."""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import replace
import hashlib
import json
import re

import oras.provider
import requests


OCI_MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX_MEDIA_TYPE = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_MEDIA_TYPE = (
    "application/vnd.docker.distribution.manifest.v2+json"
)
DOCKER_MANIFEST_LIST_MEDIA_TYPE = (
    "application/vnd.docker.distribution.manifest.list.v2+json"
)

DOCKER_HUB = "docker.io"

_DOCKER_HUB_ALIASES = (
    "index.docker.io",
    "registry-1.docker.io",
    "registry.docker.io",
)

DIGEST_PATTERN = re.compile(r"^sha256:[0-9a-fA-F]{64}$")


def is_valid_digest(value: str) -> bool:
    """Whether `value` is a complete `sha256:<64 hex>` digest."""
    return bool(DIGEST_PATTERN.match(value))


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


@dataclass(frozen=True)
class ImageReference:
    """Parsed container image reference.

    Format: [registry[:port]/]repository[:tag][@sha256:digest]

    The registry is None when the reference relies on the Docker Hub
    default, so the reference can be rendered back exactly as written.
    """

    registry: str | None
    repository: str
    tag: str | None = None
    digest: str | None = None

    @classmethod
    def parse(cls, reference: str) -> ImageReference:
        """Parses an image reference string.

        Raises:
            ValueError: If the reference is empty or carries a malformed
              digest.
        """
        if not reference:
            raise ValueError("Invalid reference: empty image reference")

        remainder = reference
        digest = None
        if "@" in remainder:
            remainder, digest = remainder.rsplit("@", 1)
            if not is_valid_digest(digest):
                raise ValueError(f"Invalid digest format: {digest}")

        tag = None
        idx = remainder.rfind(":")
        if idx > 0 and "/" not in remainder[idx:]:
            remainder, tag = remainder[:idx], remainder[idx + 1 :]

        registry = None
        first, sep, rest = remainder.partition("/")
        if sep and _looks_like_registry(first):
            registry, remainder = first, rest

        if not remainder:
            raise ValueError(f"Invalid image reference '{reference}'")

        return cls(registry, remainder, tag, digest)

    def __str__(self) -> str:
        result = self.name
        if self.digest:
            result += f"@{self.digest}"
        elif self.tag:
            result += f":{self.tag}"
        return result

    @property
    def name(self) -> str:
        """The reference without tag or digest."""
        if self.registry:
            return f"{self.registry}/{self.repository}"
        return self.repository

    @property
    def registry_host(self) -> str:
        return self.registry or DOCKER_HUB

    @property
    def api_repository(self) -> str:
        """Repository path as used by the distribution API."""
        if self.registry_host == DOCKER_HUB and "/" not in self.repository:
            return f"library/{self.repository}"
        return self.repository

    @property
    def reference(self) -> str:
        if self.digest:
            return self.digest
        return self.tag or "latest"

    def with_digest(self, digest: str) -> ImageReference:
        return replace(self, tag=None, digest=digest)

    def with_tag(self, tag: str) -> ImageReference:
        return replace(self, tag=tag, digest=None)


def pin_digest(image: str, digest: str) -> str:
    """Returns `image` rewritten as `<name>@<digest>`.

    Any tag or previous digest is dropped; a registry port is kept.
    """
    return str(ImageReference.parse(image).with_digest(digest))


def extract_registry(image: str) -> str:
    """Returns the registry host of `image`, defaulting to Docker Hub."""
    try:
        return ImageReference.parse(image).registry_host
    except ValueError:
        return DOCKER_HUB


def normalize_registry(registry: str) -> str:
    """Strips scheme, API suffixes, and Docker Hub aliases from `registry`."""
    registry = registry.removeprefix("https://").removeprefix("http://")
    if any(alias in registry for alias in _DOCKER_HUB_ALIASES):
        return DOCKER_HUB
    for suffix in ("/v1/", "/v2/", "/v1", "/v2"):
        registry = registry.removesuffix(suffix)
    return registry.rstrip("/")


def is_cloud_registry(registry: str) -> bool:
    """Whether `registry` is ECR, GCR or Google Artifact Registry."""
    if ".dkr.ecr." in registry and ".amazonaws.com" in registry:
        return True
    if registry == "gcr.io" or registry.endswith(".gcr.io"):
        return True
    return "-docker.pkg.dev" in registry


class OrasClient:
    """Read-only OCI registry client using oras-py for authentication."""

    _ACCEPT = ", ".join(
        (
            OCI_INDEX_MEDIA_TYPE,
            OCI_MANIFEST_MEDIA_TYPE,
            DOCKER_MANIFEST_LIST_MEDIA_TYPE,
            DOCKER_MANIFEST_MEDIA_TYPE,
        )
    )

    def __init__(self, *, insecure: bool = False, tls_verify: bool = True):
        self._insecure = insecure
        self._tls_verify = tls_verify
        self._registry_cache: dict[str, oras.provider.Registry] = {}

    def _auth_registry(
        self, image_ref: ImageReference
    ) -> oras.provider.Registry:
        """Get an authenticated oras Registry instance.

        Registries are cached by hostname so several destinations on the
        same registry authenticate once.
        """
        hostname = image_ref.registry_host
        if hostname in self._registry_cache:
            return self._registry_cache[hostname]

        reg = oras.provider.Registry(
            hostname=hostname,
            insecure=self._insecure,
            tls_verify=self._tls_verify,
        )
        reg.auth.load_configs(reg.get_container(str(image_ref)))
        self._registry_cache[hostname] = reg
        return reg

    def _base_url(self, image_ref: ImageReference) -> str:
        """Get the base URL for a registry."""
        registry = image_ref.registry_host
        if registry in (DOCKER_HUB, "index.docker.io"):
            registry = "registry-1.docker.io"
        return f"{'http' if self._insecure else 'https'}://{registry}"

    def resolve_digest(self, image_ref: ImageReference | str) -> str:
        """Resolves an image reference to the digest of its manifest.

        Raises:
            ValueError: If the registry does not know the reference or
              rejects the credentials.
        """
        if isinstance(image_ref, str):
            image_ref = ImageReference.parse(image_ref)
        if image_ref.digest:
            return image_ref.digest

        base = self._base_url(image_ref)
        url = (
            f"{base}/v2/{image_ref.api_repository}"
            f"/manifests/{image_ref.reference}"
        )
        headers = {"Accept": self._ACCEPT}
        reg = self._auth_registry(image_ref)
        try:
            response = reg.do_request(url, "HEAD", headers=headers)
            digest = response.headers.get("Docker-Content-Digest", "")
            if response.status_code == 200 and is_valid_digest(digest):
                return digest

            response = reg.do_request(url, "GET", headers=headers)
            if response.status_code != 200:
                raise ValueError(
                    f"Registry returned {response.status_code} "
                    f"for {image_ref}"
                )
            digest = response.headers.get("Docker-Content-Digest", "")
            if is_valid_digest(digest):
                return digest
            content = response.content or json.dumps(
                response.json(), separators=(",", ":")
            ).encode()
            return f"sha256:{hashlib.sha256(content).hexdigest()}"
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else 0
            if status == 401:
                raise ValueError(
                    f"Authentication required for {image_ref.registry_host}"
                ) from e
            if status == 404:
                raise ValueError(f"Image not found: {image_ref}") from e
            raise ValueError(f"Failed to resolve {image_ref}: {e}") from e
