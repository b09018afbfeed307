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

"""Tests for the BuildKit daemon lifecycle."""

import pathlib
from unittest import mock

import pytest

from image_builder._build import daemon
from image_builder._build.daemon import BuildKitDaemon
from image_builder._build.daemon import DaemonState
from image_builder._settings import Settings
from image_builder.errors import DaemonStartError


def _settings():
    return Settings(
        home_dir=pathlib.Path("/home/builder"),
        runtime_dir=pathlib.Path("/tmp/run"),
        environ={"PATH": "/usr/bin"},
    )


def _daemon(status_results, alive=True, attempts=30):
    process = mock.MagicMock()
    process.pid = 42
    process.poll.return_value = None if alive else 1
    launcher = mock.MagicMock(return_value=process)
    status_check = mock.MagicMock(side_effect=list(status_results))
    sleep = mock.MagicMock()
    instance = BuildKitDaemon(
        _settings(),
        launcher=launcher,
        status_check=status_check,
        sleep=sleep,
        attempts=attempts,
    )
    return instance, process, launcher, status_check, sleep


class TestBuildKitDaemon:
    def test_launch_command(self):
        instance, _, launcher, _, _ = _daemon([True])

        instance.start()

        command = launcher.call_args.args[0]
        assert command == [
            "rootlesskit",
            "--state-dir=/tmp/run/rk-buildkit",
            "--net=host",
            "--copy-up=/home",
            "--disable-host-loopback",
            "buildkitd",
            "--config=/home/builder/.config/buildkit/buildkitd.toml",
            "--addr=unix:///tmp/run/buildkitd.sock",
        ]
        env = launcher.call_args.kwargs["env"]
        assert env["HOME"] == "/home/builder"
        assert env["DOCKER_CONFIG"] == "/home/builder/.docker"
        assert env["XDG_RUNTIME_DIR"] == "/tmp/run"
        assert env["PATH"] == "/usr/bin"
        assert instance.state is DaemonState.STARTING

    def test_ready_after_polling(self):
        instance, _, _, status_check, sleep = _daemon([False, False, True])

        with instance:
            assert instance.state is DaemonState.READY
            instance.mark_running()
            assert instance.state is DaemonState.RUNNING

        assert status_check.call_count == 3
        status_check.assert_called_with(
            [
                "buildctl",
                "--addr=unix:///tmp/run/buildkitd.sock",
                "debug",
                "info",
            ]
        )
        assert sleep.call_args_list == [mock.call(1.0), mock.call(1.0)]
        assert instance.state is DaemonState.STOPPED

    def test_never_ready(self):
        instance, process, _, status_check, sleep = _daemon(
            [False] * 30, attempts=30
        )

        with pytest.raises(DaemonStartError, match="buildkitd.sock"):
            with instance:
                pass

        assert status_check.call_count == 30
        assert sleep.call_count == 30
        process.kill.assert_called_once()
        assert instance.state is DaemonState.STOPPED

    def test_process_died(self):
        instance, process, _, status_check, sleep = _daemon(
            [False, False], alive=False
        )

        with pytest.raises(DaemonStartError, match="exited"):
            with instance:
                pass

        assert status_check.call_count == 1
        sleep.assert_not_called()
        process.kill.assert_called_once()

    def test_launch_failure(self):
        launcher = mock.MagicMock(side_effect=FileNotFoundError("rootlesskit"))
        instance = BuildKitDaemon(_settings(), launcher=launcher)

        with pytest.raises(DaemonStartError, match="failed to start"):
            instance.start()

        assert instance.state is DaemonState.STOPPED

    def test_stop_is_idempotent(self):
        instance, process, _, _, _ = _daemon([True])

        with instance:
            pass
        instance.stop()
        instance.stop()

        process.kill.assert_called_once()
        process.wait.assert_called_once()

    def test_stop_on_build_error(self):
        instance, process, _, _, _ = _daemon([True])

        with pytest.raises(RuntimeError, match="boom"):
            with instance:
                instance.mark_running()
                raise RuntimeError("boom")

        process.kill.assert_called_once()

    def test_invalid_transition(self):
        instance, _, _, _, _ = _daemon([True])
        with pytest.raises(RuntimeError, match="invalid daemon transition"):
            instance.mark_running()

    def test_client_env(self):
        instance, _, _, _, _ = _daemon([])
        env = instance.client_env(SOURCE_DATE_EPOCH="0")
        assert env["BUILDKIT_HOST"] == "unix:///tmp/run/buildkitd.sock"
        assert env["DOCKER_CONFIG"] == "/home/builder/.docker"
        assert env["SOURCE_DATE_EPOCH"] == "0"


class TestEnsureInsecureRegistries:
    def test_missing_file_uses_default(self, tmp_path):
        config = tmp_path / "buildkit" / "buildkitd.toml"

        assert daemon.ensure_insecure_registries(config, ["b:5000", "a:5000"])

        assert config.read_text() == (
            daemon.DEFAULT_BUILDKITD_CONFIG
            + '\n[registry."a:5000"]\n  http = true\n  insecure = true\n'
            + '\n[registry."b:5000"]\n  http = true\n  insecure = true\n'
        )

    def test_existing_registry_not_duplicated(self, tmp_path):
        config = tmp_path / "buildkitd.toml"
        original = '[registry."a:5000"]\n  http = true\n'
        config.write_text(original)

        assert not daemon.ensure_insecure_registries(config, ["a:5000"])

        assert config.read_text() == original

    def test_no_registries_does_not_write(self, tmp_path):
        config = tmp_path / "buildkitd.toml"
        assert not daemon.ensure_insecure_registries(config, [])
        assert not config.exists()
