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

"""Tests for pushing images with retry."""

import pathlib
import subprocess
from unittest import mock

import pytest

from image_builder._build import push
from image_builder._build.backend import Backend
from image_builder._build.request import BuildRequest
from image_builder._settings import Settings
from image_builder.errors import AuthenticationError
from image_builder.errors import BuildError
from image_builder.errors import PushError


_DIGEST = "sha256:" + "e" * 64
_SETTINGS = Settings(environ={"PATH": "/usr/bin"})


def _result(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess([], returncode, stdout, stderr)


class TestPushImages:
    def test_noop_for_buildkit(self):
        runner = mock.MagicMock()
        request = BuildRequest(destinations=("r.io/a:1",))

        digests = push.push_images(
            request, Backend.BUILDKIT, settings=_SETTINGS, runner=runner
        )

        assert digests == {}
        runner.assert_not_called()

    def test_pushes_each_destination(self):
        runner = mock.MagicMock(
            return_value=_result(stderr=f"Copying config {_DIGEST}\n")
        )
        request = BuildRequest(
            destinations=("r.io/a:1", "r.io/a:latest"),
            storage_driver="overlay",
            registry_certificate="/certs",
        )

        digests = push.push_images(
            request,
            Backend.BUILDAH,
            settings=_SETTINGS,
            auth_file="/auth/config.json",
            runner=runner,
        )

        assert digests == {"r.io/a:1": _DIGEST, "r.io/a:latest": _DIGEST}
        first = runner.call_args_list[0]
        assert first.args[0] == [
            "buildah",
            "push",
            "--authfile",
            "/auth/config.json",
            "--cert-dir",
            "/certs",
            "r.io/a:1",
        ]
        env = first.kwargs["env"]
        assert env["REGISTRY_AUTH_FILE"] == "/auth/config.json"
        assert env["STORAGE_DRIVER"] == "overlay"
        assert env["PATH"] == "/usr/bin"

    def test_insecure_registry_skips_tls(self):
        runner = mock.MagicMock(return_value=_result())
        request = BuildRequest(
            destinations=("localhost:5000/a:1", "quay.io/a:1"),
            insecure_registries=("localhost:5000",),
        )

        push.push_images(
            request, Backend.BUILDAH, settings=_SETTINGS, runner=runner
        )

        local, remote = (c.args[0] for c in runner.call_args_list)
        assert "--tls-verify=false" in local
        assert "--tls-verify=false" not in remote

    def test_missing_digest_is_not_an_error(self):
        runner = mock.MagicMock(return_value=_result(stderr="done\n"))
        request = BuildRequest(destinations=("r.io/a:1",))
        digests = push.push_images(
            request, Backend.BUILDAH, settings=_SETTINGS, runner=runner
        )
        assert digests == {}

    def test_retries_with_backoff(self):
        runner = mock.MagicMock(
            side_effect=[
                _result(1, stderr="dial tcp: connection refused"),
                _result(1, stderr="something odd"),
                _result(stderr=f"Copying config {_DIGEST}"),
            ]
        )
        sleep = mock.MagicMock()
        request = BuildRequest(destinations=("r.io/a:1",), push_retry=3)

        digests = push.push_images(
            request,
            Backend.BUILDAH,
            settings=_SETTINGS,
            runner=runner,
            sleep=sleep,
        )

        assert digests == {"r.io/a:1": _DIGEST}
        assert runner.call_count == 3
        assert sleep.call_args_list == [mock.call(2), mock.call(4)]

    def test_gives_up_after_retries(self):
        runner = mock.MagicMock(
            return_value=_result(1, stderr="lookup r.io: no such host")
        )
        sleep = mock.MagicMock()
        request = BuildRequest(destinations=("r.io/a:1",), push_retry=2)

        with pytest.raises(PushError, match="after 2 attempts.*no such host"):
            push.push_images(
                request,
                Backend.BUILDAH,
                settings=_SETTINGS,
                runner=runner,
                sleep=sleep,
            )

        assert runner.call_count == 2

    def test_default_single_attempt(self):
        runner = mock.MagicMock(return_value=_result(1, stderr="boom"))
        sleep = mock.MagicMock()
        request = BuildRequest(destinations=("r.io/a:1",))

        with pytest.raises(PushError, match="after 1 attempts"):
            push.push_images(
                request,
                Backend.BUILDAH,
                settings=_SETTINGS,
                runner=runner,
                sleep=sleep,
            )

        assert runner.call_count == 1
        sleep.assert_not_called()

    def test_auth_failure_not_retried(self):
        stderr = "Error: unauthorized: access to the requested resource"
        runner = mock.MagicMock(return_value=_result(1, stderr=stderr))
        sleep = mock.MagicMock()
        request = BuildRequest(
            destinations=("registry.example.com/team/a:1",), push_retry=3
        )

        with pytest.raises(AuthenticationError) as excinfo:
            push.push_images(
                request,
                Backend.BUILDAH,
                settings=_SETTINGS,
                runner=runner,
                sleep=sleep,
            )

        assert runner.call_count == 1
        sleep.assert_not_called()
        assert stderr in str(excinfo.value)
        assert isinstance(excinfo.value, PushError)
        remediation = excinfo.value.remediation
        assert "docker login registry.example.com" in remediation
        assert "kubectl create secret docker-registry" in remediation
        assert "DOCKER_REGISTRY=registry.example.com" in remediation


class TestExportTar:
    def test_export_by_name(self, tmp_path):
        tar = tmp_path / "image.tar"

        def fake_run(args, **kwargs):
            pathlib.Path(tar).write_bytes(b"archive")
            return _result()

        request = BuildRequest(destinations=("r.io/a:1",), tar_path=str(tar))
        runner = mock.MagicMock(side_effect=fake_run)

        push.export_tar(request, settings=_SETTINGS, runner=runner)

        runner.assert_called_once()
        assert runner.call_args.args[0] == [
            "buildah",
            "push",
            "r.io/a:1",
            f"docker-archive:{tar}",
        ]

    def test_falls_back_to_image_id(self, tmp_path):
        tar = tmp_path / "image.tar"

        def fake_run(args, **kwargs):
            if args[1] == "images":
                return _result(stdout="abc123\n")
            if args[2] == "abc123":
                tar.write_bytes(b"archive")
                return _result()
            return _result(1, stderr="image not known")

        request = BuildRequest(destinations=("r.io/a:1",), tar_path=str(tar))
        runner = mock.MagicMock(side_effect=fake_run)

        push.export_tar(request, settings=_SETTINGS, runner=runner)

        assert runner.call_count == 3
        assert runner.call_args_list[1].args[0][-1] == "reference=r.io/a:1"

    def test_image_not_found(self, tmp_path):
        runner = mock.MagicMock(
            side_effect=[_result(1, stderr="image not known"), _result()]
        )
        request = BuildRequest(
            destinations=("r.io/a:1",), tar_path=str(tmp_path / "x.tar")
        )

        with pytest.raises(BuildError, match="image not known"):
            push.export_tar(request, settings=_SETTINGS, runner=runner)

    def test_empty_archive(self, tmp_path):
        tar = tmp_path / "image.tar"
        tar.write_bytes(b"")
        runner = mock.MagicMock(return_value=_result())
        request = BuildRequest(destinations=("r.io/a:1",), tar_path=str(tar))

        with pytest.raises(BuildError, match="empty"):
            push.export_tar(request, settings=_SETTINGS, runner=runner)

    def test_requires_destination(self):
        with pytest.raises(BuildError, match="no destination"):
            push.export_tar(
                BuildRequest(tar_path="/x.tar"),
                settings=_SETTINGS,
                runner=mock.MagicMock(),
            )
