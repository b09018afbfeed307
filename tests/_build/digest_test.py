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

"""Tests for digest extraction from backend output."""

from image_builder._build import digest


_LIST = "sha256:" + "a" * 64
_MANIFEST = "sha256:" + "b" * 64
_CONFIG = "sha256:" + "c" * 64


class TestExtractBuildKitDigest:
    def test_manifest_list_wins(self):
        stderr = (
            "#12 exporting layers done\n"
            f"#12 exporting manifest {_MANIFEST} 0.0s done\n"
            f"#12 exporting manifest list {_LIST} 0.0s done\n"
            "#12 pushing layers\n"
        )
        assert digest.extract_buildkit_digest("", stderr) == _LIST

    def test_manifest_fallback(self):
        stderr = (
            f"#10 exporting config {_CONFIG} done\n"
            f"#10 exporting manifest {_MANIFEST} done\n"
        )
        assert digest.extract_buildkit_digest("", stderr) == _MANIFEST

    def test_stdout_fallback(self):
        stdout = f"some output\n{_CONFIG}\n"
        assert digest.extract_buildkit_digest(stdout, "nothing here") == _CONFIG

    def test_truncated_digest_ignored(self):
        stderr = "#12 exporting manifest list sha256:abc123 done\n"
        assert digest.extract_buildkit_digest("sha256:abc", stderr) is None

    def test_no_digest(self):
        assert digest.extract_buildkit_digest("", "") is None


class TestExtractPushDigest:
    def test_copying_config(self):
        stderr = (
            "Getting image source signatures\n"
            "Copying blob sha256:" + "d" * 64 + "\n"
            f"Copying config {_CONFIG}\n"
            "Writing manifest to image destination\n"
        )
        assert digest.extract_push_digest(stderr) == _CONFIG

    def test_case_insensitive(self):
        stderr = f"copying config {_CONFIG} done\n"
        assert digest.extract_push_digest(stderr) == _CONFIG

    def test_first_match(self):
        stderr = f"Copying config {_CONFIG}\nCopying config {_MANIFEST}\n"
        assert digest.extract_push_digest(stderr) == _CONFIG

    def test_no_match(self):
        assert digest.extract_push_digest("Storing signatures\n") is None

    def test_truncated(self):
        assert digest.extract_push_digest("Copying config sha256:ab\n") is None
