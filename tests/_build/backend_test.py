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

"""Tests for backend detection."""

import pytest

from image_builder._build import backend
from image_builder._build.backend import Backend
from image_builder.errors import BackendUnavailableError


def _which(*installed):
    def which(binary):
        return f"/usr/bin/{binary}" if binary in installed else None

    return which


class TestSelectBackend:
    def test_buildkit_preferred(self):
        which = _which("buildkitd", "buildctl", "buildah")
        assert backend.select_backend(which) is Backend.BUILDKIT

    def test_buildkit_needs_both_binaries(self):
        which = _which("buildkitd", "buildah")
        assert backend.select_backend(which) is Backend.BUILDAH

    def test_buildctl_alone_is_not_enough(self):
        assert backend.select_backend(_which("buildctl")) is None

    def test_buildah(self):
        assert backend.select_backend(_which("buildah")) is Backend.BUILDAH

    def test_none(self):
        assert backend.select_backend(_which()) is None


class TestRequireBackend:
    def test_raises_naming_binaries(self):
        with pytest.raises(BackendUnavailableError) as excinfo:
            backend.require_backend(_which())
        message = str(excinfo.value)
        for binary in ("buildkitd", "buildctl", "buildah"):
            assert binary in message

    def test_returns_backend(self):
        which = _which("buildkitd", "buildctl")
        assert backend.require_backend(which) is Backend.BUILDKIT
