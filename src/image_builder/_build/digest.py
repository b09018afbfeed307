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

"""Digest recovery from backend log output.

The backends only report digests in human readable progress lines, so
these functions scan text for the known phrasings. Every function returns
either a complete `sha256:<64 hex>` digest or None.
"""

from __future__ import annotations

import re

from image_builder._oci.registry import is_valid_digest


_MANIFEST_LIST_MARKER = "exporting manifest list sha256:"
_MANIFEST_MARKER = "exporting manifest sha256:"
_PUSH_CONFIG = re.compile(r"copying config (sha256:\S+)", re.IGNORECASE)

_DIGEST_LENGTH = len("sha256:") + 64


def _first_digest(line: str) -> str | None:
    for token in line.split():
        if is_valid_digest(token):
            return token
    return None


def _scan(text: str, marker: str) -> str | None:
    for line in text.splitlines():
        if marker in line:
            digest = _first_digest(line)
            if digest:
                return digest
    return None


def extract_buildkit_digest(stdout: str, stderr: str) -> str | None:
    """Finds the pushed image digest in `buildctl build` output.

    A manifest list digest wins over a single manifest digest, since with
    attestations the list is what gets pushed and must be signed. A bare
    digest on stdout is the last resort.
    """
    for marker in (_MANIFEST_LIST_MARKER, _MANIFEST_MARKER):
        digest = _scan(stderr, marker)
        if digest:
            return digest

    for token in stdout.split():
        if len(token) == _DIGEST_LENGTH and is_valid_digest(token):
            return token
    return None


def extract_push_digest(stderr: str) -> str | None:
    """Finds the digest in `buildah push` output."""
    match = _PUSH_CONFIG.search(stderr)
    if match and is_valid_digest(match.group(1)):
        return match.group(1)
    return None
