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

"""Files recording the digest of the built image."""

from __future__ import annotations

from collections.abc import Mapping
import json
import logging
import pathlib

from image_builder._build.request import BuildRequest
from image_builder._oci.registry import pin_digest


logger = logging.getLogger(__name__)


def write_digest_files(
    request: BuildRequest, digests: Mapping[str, str]
) -> list[pathlib.Path]:
    """Writes the requested digest files for the first destination.

    Nothing is written when the first destination has no known digest.

    Returns:
        The paths that were written.

    Raises:
        OSError: If a file cannot be written.
    """
    if not request.destinations:
        return []
    image = request.destinations[0]
    digest = digests.get(image)
    if not digest:
        if (
            request.digest_file
            or request.image_name_with_digest_file
            or request.image_name_tag_with_digest_file
        ):
            logger.warning("No digest available for %s", image)
        return []

    contents = {
        request.digest_file: digest,
        request.image_name_with_digest_file: pin_digest(image, digest),
        request.image_name_tag_with_digest_file: json.dumps(
            {"image": image, "digest": digest}, indent=2
        ),
    }
    written = []
    for path, content in contents.items():
        if not path:
            continue
        target = pathlib.Path(path)
        target.write_text(content)
        logger.info("Digest information saved to: %s", target)
        written.append(target)
    return written
