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

"""Detection of the installed build backend."""

from __future__ import annotations

from collections.abc import Callable
import enum
import logging
import shutil

from image_builder.errors import BackendUnavailableError


logger = logging.getLogger(__name__)

Which = Callable[[str], "str | None"]


class Backend(enum.Enum):
    """Supported build backends."""

    BUILDKIT = "buildkit"
    BUILDAH = "buildah"

    @property
    def binaries(self) -> tuple[str, ...]:
        match self:
            case Backend.BUILDKIT:
                return ("buildkitd", "buildctl")
            case Backend.BUILDAH:
                return ("buildah",)


def select_backend(which: Which = shutil.which) -> Backend | None:
    """Returns the preferred available backend, or None.

    BuildKit needs both its daemon and its client on PATH and wins over
    Buildah when both are installed.
    """
    for backend in (Backend.BUILDKIT, Backend.BUILDAH):
        if all(which(binary) for binary in backend.binaries):
            logger.debug("Detected backend %s", backend.value)
            return backend
    return None


def require_backend(which: Which = shutil.which) -> Backend:
    """Like `select_backend` but raises when nothing is installed."""
    backend = select_backend(which)
    if backend is None:
        raise BackendUnavailableError()
    return backend
