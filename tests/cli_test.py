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

"""Tests for the command line interface."""

from unittest import mock

from click.testing import CliRunner
import pytest

from image_builder import _cli
from image_builder._build import preflight
from image_builder._build.backend import Backend
from image_builder.building import BuildResult
from image_builder.errors import AuthenticationError
from image_builder.errors import PushError


_DIGEST = "sha256:" + "e" * 64


@pytest.fixture
def builder():
    with mock.patch("image_builder.building.Builder") as builder_class:
        instance = builder_class.return_value
        instance.run.return_value = BuildResult(
            Backend.BUILDAH, {"quay.io/acme/app:1": _DIGEST}
        )
        yield instance


def _invoke(*args, env=None):
    return CliRunner().invoke(_cli.main, ["build", *args], env=env)


def _request(builder):
    request, _ = builder.run.call_args.args
    return request


class TestBuildCommand:
    def test_success(self, builder):
        result = _invoke("-c", "/src", "-d", "quay.io/acme/app:1")

        assert result.exit_code == 0, result.output
        assert f"quay.io/acme/app:1: {_DIGEST}" in result.output
        assert "Build succeeded" in result.output

        request, git_config = builder.run.call_args.args
        assert request.destinations == ("quay.io/acme/app:1",)
        assert request.dockerfile == "Dockerfile"
        assert git_config.context == "/src"
        assert not request.signing.enabled

    def test_pairs(self, builder):
        result = _invoke(
            "-c",
            "/src",
            "--build-arg",
            "VERSION=1.0",
            "--build-arg",
            "HTTP_PROXY",
            "--label",
            "team=core",
        )
        assert result.exit_code == 0, result.output
        request = _request(builder)
        assert request.build_args == {"VERSION": "1.0", "HTTP_PROXY": ""}
        assert request.labels == {"team": "core"}

    def test_label_requires_value(self, builder):
        result = _invoke("-c", "/src", "--label", "team")
        assert result.exit_code == 2
        assert "expected KEY=VALUE" in result.output
        builder.run.assert_not_called()

    def test_git_options(self, builder, tmp_path):
        token = tmp_path / "token"
        token.write_text("tok")
        result = _invoke(
            "-c",
            "https://github.com/acme/app.git",
            "--git-branch",
            "dev",
            "--context-sub-path",
            "svc",
            "--git-token-file",
            str(token),
        )
        assert result.exit_code == 0, result.output
        _, git_config = builder.run.call_args.args
        assert git_config.branch == "dev"
        assert git_config.sub_path == "svc"
        assert git_config.token_file == str(token)

    def test_timestamp_implies_reproducible(self, builder):
        result = _invoke("-c", "/src", "--timestamp", "1700000000")
        assert result.exit_code == 0, result.output
        request = _request(builder)
        assert request.reproducible
        assert request.timestamp == "1700000000"

    def test_reproducible_uses_source_date_epoch(self, builder):
        result = _invoke(
            "-c",
            "/src",
            "--reproducible",
            env={"SOURCE_DATE_EPOCH": "1600000000"},
        )
        assert result.exit_code == 0, result.output
        assert _request(builder).timestamp == "1600000000"

    def test_reproducible_defaults_to_zero(self, builder):
        result = _invoke(
            "-c", "/src", "--reproducible", env={"SOURCE_DATE_EPOCH": ""}
        )
        assert result.exit_code == 0, result.output
        assert _request(builder).timestamp == "0"

    def test_attestation_flag_without_value(self, builder):
        result = _invoke("-c", "/src", "--attestation")
        assert result.exit_code == 0, result.output
        assert _request(builder).attestation == "min"

    def test_attest_wins_over_attestation(self, builder):
        result = _invoke(
            "-c",
            "/src",
            "--attestation=max",
            "--attest",
            "type=sbom,generator=image:tag",
        )
        assert result.exit_code == 0, result.output
        request = _request(builder)
        assert request.attestation == ""
        assert request.attestations[0].kind == "sbom"

    def test_invalid_attest(self, builder):
        result = _invoke("-c", "/src", "--attest", "type=bogus")
        assert result.exit_code == 2
        builder.run.assert_not_called()

    def test_sign_requires_attestations(self, builder):
        result = _invoke("-c", "/src", "--sign")
        assert result.exit_code == 2
        assert "--sign requires" in result.output
        builder.run.assert_not_called()

    def test_sign(self, builder):
        result = _invoke(
            "-c",
            "/src",
            "--sign",
            "--attestation=min",
            "--cosign-key",
            "/keys/cosign.key",
            "--cosign-password-env",
            "KEY_PW",
        )
        assert result.exit_code == 0, result.output
        signing = _request(builder).signing
        assert signing.enabled
        assert signing.key_path == "/keys/cosign.key"
        assert signing.password_env == "KEY_PW"

    def test_storage_driver_lowercased(self, builder):
        result = _invoke("-c", "/src", "--storage-driver", "VFS")
        assert result.exit_code == 0, result.output
        assert _request(builder).storage_driver == "vfs"

    @mock.patch("image_builder._build.preflight.log_storage_driver")
    def test_storage_driver_notes_logged(self, mock_log, builder):
        result = _invoke("-c", "/src", "--storage-driver", "fuse-overlayfs")
        assert result.exit_code == 0, result.output
        mock_log.assert_called_once_with("fuse-overlayfs")

    def test_authentication_failure(self, builder):
        builder.run.side_effect = AuthenticationError(
            "quay.io/acme/app:1", "unauthorized", "docker login quay.io"
        )
        result = _invoke("-c", "/src", "-d", "quay.io/acme/app:1")
        assert result.exit_code == 1
        assert "Build failed with error" in result.output
        assert "docker login quay.io" in result.output

    def test_failure(self, builder):
        builder.run.side_effect = PushError("failed to push")
        result = _invoke("-c", "/src", "-d", "quay.io/acme/app:1")
        assert result.exit_code == 1
        assert "Build failed with error: failed to push" in result.output

    def test_context_required(self, builder):
        result = _invoke("-d", "quay.io/acme/app:1")
        assert result.exit_code == 2
        builder.run.assert_not_called()


class TestBackendCommand:
    @mock.patch("image_builder._build.backend.select_backend")
    def test_prints_backend(self, mock_select):
        mock_select.return_value = Backend.BUILDKIT
        result = CliRunner().invoke(_cli.main, ["backend"])
        assert result.exit_code == 0
        assert result.output.strip() == "buildkit"

    @mock.patch("image_builder._build.backend.select_backend")
    def test_no_backend(self, mock_select):
        mock_select.return_value = None
        result = CliRunner().invoke(_cli.main, ["backend"])
        assert result.exit_code == 1
        assert "No build backend found" in result.output


class TestCheckEnvironmentCommand:
    def _report(self, **kwargs):
        values = dict(
            uid=1000,
            backend=Backend.BUILDAH,
            binaries={"buildah": "/usr/bin/buildah", "buildctl": None},
            max_user_namespaces=15000,
            storage_driver="vfs",
        )
        values.update(kwargs)
        return preflight.EnvironmentReport(**values)

    @mock.patch("image_builder._build.preflight.check_environment")
    def test_passes(self, mock_check):
        mock_check.return_value = self._report()

        result = CliRunner().invoke(_cli.main, ["check-environment"])

        assert result.exit_code == 0, result.output
        mock_check.assert_called_once_with("")
        assert "Backend: buildah" in result.output
        assert "buildah: /usr/bin/buildah" in result.output
        assert "buildctl: not found" in result.output
        assert "User namespaces: available" in result.output
        assert "Environment check passed" in result.output

    @mock.patch("image_builder._build.preflight.check_environment")
    def test_storage_driver_option(self, mock_check):
        mock_check.return_value = self._report(
            storage_driver="fuse-overlayfs",
            storage_issues=["fuse-overlayfs binary not found"],
        )

        result = CliRunner().invoke(
            _cli.main,
            ["check-environment", "--storage-driver", "FUSE-OVERLAYFS"],
        )

        assert result.exit_code == 1
        mock_check.assert_called_once_with("fuse-overlayfs")
        assert "fuse-overlayfs binary not found" in result.output
        assert "Environment check failed" in result.output

    @pytest.mark.parametrize(
        "kwargs",
        [{"backend": None}, {"max_user_namespaces": 0}],
    )
    @mock.patch("image_builder._build.preflight.check_environment")
    def test_fails(self, mock_check, kwargs):
        mock_check.return_value = self._report(**kwargs)
        result = CliRunner().invoke(_cli.main, ["check-environment"])
        assert result.exit_code == 1

    @mock.patch("image_builder._build.preflight.check_environment")
    def test_root_warning(self, mock_check):
        mock_check.return_value = self._report(uid=0)
        result = CliRunner().invoke(_cli.main, ["check-environment"])
        assert "running as root" in result.output


class TestMain:
    def test_version(self):
        result = CliRunner().invoke(_cli.main, ["--version"])
        assert result.exit_code == 0
        assert "0.3.0" in result.output
