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

"""Host checks for rootless builds.

These checks answer whether a build can work here before one is tried:
which backend binaries are installed, whether unprivileged user
namespaces are enabled, and whether the chosen storage driver can be
used. Nothing here changes the host.
"""

from __future__ import annotations

from collections.abc import Callable
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
import logging
import os
import pathlib
import shutil

from image_builder._build.backend import Backend
from image_builder._build.backend import select_backend


logger = logging.getLogger(__name__)

STORAGE_DRIVERS = ("vfs", "overlay", "fuse-overlayfs", "native")

BINARIES = (
    "buildkitd",
    "buildctl",
    "rootlesskit",
    "buildah",
    "git",
    "cosign",
    "fuse-overlayfs",
)

PROC = pathlib.Path("/proc")
FUSE_DEVICE = pathlib.Path("/dev/fuse")

_BACKEND_DRIVERS = {
    Backend.BUILDKIT: ("native", "overlay", "fuse-overlayfs"),
    Backend.BUILDAH: ("vfs", "overlay"),
}

_DRIVER_NOTES = {
    "overlay": "Overlay driver requires kernel 5.11+ and overlay "
    "filesystem support",
    "fuse-overlayfs": "FUSE-overlayfs driver (recommended for "
    "rootless/Kubernetes environments)",
    "vfs": "VFS storage (Buildah only, slower but most compatible)",
    "native": "Native snapshotter (BuildKit only, compatible but slower "
    "than overlay)",
}


def default_storage_driver(backend: Backend | None) -> str:
    """The driver a backend uses when none is requested."""
    return "vfs" if backend is Backend.BUILDAH else "native"


def log_storage_driver(
    driver: str, which: Callable[[str], str | None] = shutil.which
) -> None:
    """Logs what the chosen storage driver needs from the host."""
    if not driver:
        return
    logger.info("Using storage driver: %s", driver)
    if driver in _DRIVER_NOTES:
        logger.info("Note: %s", _DRIVER_NOTES[driver])
    if driver == "fuse-overlayfs" and which("fuse-overlayfs") is None:
        logger.warning(
            "fuse-overlayfs binary not found. "
            "Install with: apk add fuse-overlayfs"
        )


def read_max_user_namespaces(proc: pathlib.Path = PROC) -> int | None:
    """Reads `user.max_user_namespaces`; None when it cannot be read."""
    path = proc / "sys" / "user" / "max_user_namespaces"
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError) as e:
        logger.debug("Cannot read %s: %s", path, e)
        return None


def _kernel_has_overlay(proc: pathlib.Path) -> bool:
    try:
        filesystems = (proc / "filesystems").read_text()
    except OSError:
        return False
    return any(
        line.split()[-1] == "overlay"
        for line in filesystems.splitlines()
        if line.strip()
    )


def storage_driver_issues(
    driver: str,
    backend: Backend | None,
    *,
    which: Callable[[str], str | None] = shutil.which,
    proc: pathlib.Path = PROC,
    fuse_device: pathlib.Path = FUSE_DEVICE,
) -> list[str]:
    """Returns the reasons `driver` cannot be used; empty when it can."""
    if driver not in STORAGE_DRIVERS:
        return [f"unknown storage driver {driver!r}"]

    issues = []
    if backend is not None and driver not in _BACKEND_DRIVERS[backend]:
        supported = ", ".join(_BACKEND_DRIVERS[backend])
        issues.append(
            f"{backend.value} does not support the {driver} driver "
            f"(supported: {supported})"
        )
    match driver:
        case "overlay":
            if not _kernel_has_overlay(proc):
                issues.append("kernel has no overlay filesystem support")
        case "fuse-overlayfs":
            if which("fuse-overlayfs") is None:
                issues.append("fuse-overlayfs binary not found")
            if not fuse_device.exists():
                issues.append(f"{fuse_device} not available")
    return issues


@dataclass
class EnvironmentReport:
    """Result of `check_environment`.

    Attributes:
        uid: User ID the checks ran as.
        backend: The backend a build would use, if any.
        binaries: Path of each known tool, None when not installed.
        max_user_namespaces: The kernel limit, None when unreadable.
        storage_driver: The driver that was checked.
        storage_issues: Reasons the driver cannot be used.
    """

    uid: int
    backend: Backend | None
    binaries: dict[str, str | None] = field(default_factory=dict)
    max_user_namespaces: int | None = None
    storage_driver: str = ""
    storage_issues: list[str] = field(default_factory=list)

    @property
    def user_namespaces(self) -> bool:
        return bool(self.max_user_namespaces)

    @property
    def ok(self) -> bool:
        return (
            self.backend is not None
            and self.user_namespaces
            and not self.storage_issues
        )


def check_environment(
    storage_driver: str = "",
    *,
    which: Callable[[str], str | None] = shutil.which,
    environ: Mapping[str, str] | None = None,
    getuid: Callable[[], int] = os.getuid,
    proc: pathlib.Path = PROC,
    fuse_device: pathlib.Path = FUSE_DEVICE,
) -> EnvironmentReport:
    """Inspects the host for rootless build support.

    Args:
        storage_driver: Driver to check. Falls back to `STORAGE_DRIVER`
          in `environ`, then to the backend's default.
        which: Locates binaries, like `shutil.which`.
        environ: Environment to read `STORAGE_DRIVER` from; defaults to
          `os.environ`.
        getuid: Returns the current user ID.
        proc: Mount point of procfs.
        fuse_device: The FUSE device node.
    """
    if environ is None:
        environ = os.environ
    backend = select_backend(which)
    driver = (
        storage_driver
        or environ.get("STORAGE_DRIVER", "")
        or default_storage_driver(backend)
    ).lower()

    report = EnvironmentReport(
        uid=getuid(),
        backend=backend,
        binaries={name: which(name) for name in BINARIES},
        max_user_namespaces=read_max_user_namespaces(proc),
        storage_driver=driver,
        storage_issues=storage_driver_issues(
            driver, backend, which=which, proc=proc, fuse_device=fuse_device
        ),
    )
    logger.debug("Environment report: %s", report)
    return report
