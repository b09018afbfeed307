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

"""Lifecycle of the rootless BuildKit daemon.

The daemon has no control protocol beyond its socket, so readiness is
detected by polling `buildctl debug info` while watching the child
process. States move along a fixed table:

```
STOPPED -> STARTING -> READY -> RUNNING -> STOPPING -> STOPPED
```

`STARTING`, `READY` and `RUNNING` may also go straight to `STOPPING`.
Typical use wraps the build in the daemon's context manager:

```python
with BuildKitDaemon(settings) as daemon:
    daemon.mark_running()
    subprocess.run(["buildctl", ...], env=daemon.client_env())
```
"""

from __future__ import annotations

from collections.abc import Callable
from collections.abc import Iterable
import enum
import logging
import pathlib
import subprocess
import sys
import time

from image_builder._build import validation
from image_builder._settings import Settings
from image_builder.errors import DaemonStartError


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


logger = logging.getLogger(__name__)

READY_INTERVAL = 1.0
READY_ATTEMPTS = 30

DEFAULT_BUILDKITD_CONFIG = """\
[worker.oci]
  enabled = true
  rootless = true
  binary = "crun"
  noProcessSandbox = true
"""


class DaemonState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    STOPPING = "stopping"


_TRANSITIONS = {
    DaemonState.STOPPED: {DaemonState.STARTING},
    DaemonState.STARTING: {DaemonState.READY, DaemonState.STOPPING},
    DaemonState.READY: {DaemonState.RUNNING, DaemonState.STOPPING},
    DaemonState.RUNNING: {DaemonState.STOPPING},
    DaemonState.STOPPING: {DaemonState.STOPPED},
}


def _default_status_check(command: list[str]) -> bool:
    result = subprocess.run(command, capture_output=True, text=True)
    if result.returncode != 0:
        logger.debug("buildkitd not ready: %s", result.stderr.strip())
    return result.returncode == 0


class BuildKitDaemon:
    """A `buildkitd` process started under `rootlesskit`.

    The launcher, status check and sleep function are injectable so the
    readiness logic can run without spawning processes.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        launcher: Callable[..., subprocess.Popen] = subprocess.Popen,
        status_check: Callable[[list[str]], bool] = _default_status_check,
        sleep: Callable[[float], None] = time.sleep,
        interval: float = READY_INTERVAL,
        attempts: int = READY_ATTEMPTS,
    ):
        self._settings = settings
        self._launcher = launcher
        self._status_check = status_check
        self._sleep = sleep
        self._interval = interval
        self._attempts = attempts
        self._process: subprocess.Popen | None = None
        self._state = DaemonState.STOPPED

    @property
    def state(self) -> DaemonState:
        return self._state

    @property
    def address(self) -> str:
        return f"unix://{self._settings.buildkit_socket}"

    def _transition(self, target: DaemonState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise RuntimeError(
                f"invalid daemon transition {self._state.value} -> "
                f"{target.value}"
            )
        logger.debug(
            "buildkitd state %s -> %s", self._state.value, target.value
        )
        self._state = target

    def launch_command(self) -> list[str]:
        settings = self._settings
        return [
            "rootlesskit",
            f"--state-dir={settings.rootlesskit_state_dir}",
            "--net=host",
            "--copy-up=/home",
            "--disable-host-loopback",
            "buildkitd",
            f"--config={settings.buildkit_config}",
            f"--addr={self.address}",
        ]

    def status_command(self) -> list[str]:
        return ["buildctl", f"--addr={self.address}", "debug", "info"]

    def client_env(self, **extra: str) -> dict[str, str]:
        """Environment for `buildctl` commands talking to this daemon."""
        return self._settings.child_env(
            BUILDKIT_HOST=self.address,
            DOCKER_CONFIG=str(self._settings.docker_config),
            **extra,
        )

    def start(self) -> None:
        """Launches the daemon process.

        Raises:
            DaemonStartError: If the process cannot be spawned.
        """
        validation.validate_socket_path(str(self._settings.buildkit_socket))
        self._transition(DaemonState.STARTING)
        env = self._settings.child_env(
            HOME=str(self._settings.home_dir),
            DOCKER_CONFIG=str(self._settings.docker_config),
            XDG_RUNTIME_DIR=str(self._settings.runtime_dir),
        )
        try:
            self._process = self._launcher(self.launch_command(), env=env)
        except OSError as e:
            self._transition(DaemonState.STOPPING)
            self._transition(DaemonState.STOPPED)
            raise DaemonStartError(f"failed to start buildkitd: {e}") from e
        logger.debug("buildkitd started (PID: %s)", self._process.pid)

    def is_alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def wait_until_ready(self) -> None:
        """Polls the daemon until it answers or the attempts run out.

        Raises:
            DaemonStartError: If the process exits or never becomes ready.
        """
        command = self.status_command()
        for attempt in range(1, self._attempts + 1):
            if self._status_check(command):
                self._transition(DaemonState.READY)
                logger.debug("buildkitd is ready")
                return
            if not self.is_alive():
                raise DaemonStartError(
                    "buildkitd exited before becoming ready on "
                    f"{self._settings.buildkit_socket}"
                )
            logger.debug(
                "Waiting for buildkitd... (%d/%d)", attempt, self._attempts
            )
            self._sleep(self._interval)

        raise DaemonStartError(
            f"buildkitd failed to become ready on "
            f"{self._settings.buildkit_socket} after "
            f"{self._attempts * self._interval:g} seconds"
        )

    def mark_running(self) -> None:
        self._transition(DaemonState.RUNNING)

    def stop(self) -> None:
        """Kills the daemon. Safe to call more than once."""
        if self._state in (DaemonState.STOPPED, DaemonState.STOPPING):
            return
        self._transition(DaemonState.STOPPING)
        process, self._process = self._process, None
        if process is not None:
            logger.debug("Stopping buildkitd...")
            process.kill()
            process.wait()
        self._transition(DaemonState.STOPPED)

    def __enter__(self) -> Self:
        self.start()
        try:
            self.wait_until_ready()
        except BaseException:
            self.stop()
            raise
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.stop()


def ensure_insecure_registries(
    config_path: pathlib.Path, registries: Iterable[str]
) -> bool:
    """Adds plain-HTTP registry blocks to the buildkitd configuration.

    A missing configuration file is created from the default worker
    settings. The file is rewritten only when a registry was added.

    Returns:
        Whether the file was modified.
    """
    try:
        existing = config_path.read_text()
    except FileNotFoundError:
        logger.debug("%s not found, using default configuration", config_path)
        existing = DEFAULT_BUILDKITD_CONFIG

    content = existing
    for registry in sorted(set(registries)):
        header = f'[registry."{registry}"]'
        if header in existing:
            logger.debug("Registry already configured: %s", registry)
            continue
        logger.info("Adding insecure registry: %s", registry)
        content += f"\n{header}\n  http = true\n  insecure = true\n"

    if content == existing:
        logger.debug("No changes needed to %s", config_path)
        return False
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(content)
    return True
