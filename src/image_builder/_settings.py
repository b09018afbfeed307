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

"""Process-wide settings resolved once from the environment.

Every component receives a `Settings` instance rather than reading
environment variables on its own, so tests can build one directly:

```python
settings = Settings(home_dir=pathlib.Path("/tmp/home"))
```
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
import os
import pathlib
import sys

from image_builder.errors import ConfigurationError


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


DEFAULT_HOME = "/home/builder"
DEFAULT_RUNTIME_DIR = "/tmp/run"

_TRUTHY = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Filesystem locations and preferences shared by a build.

    Attributes:
        home_dir: Home directory of the build user.
        runtime_dir: Runtime directory holding the BuildKit socket and
          rootlesskit state.
        docker_config_dir: Directory containing the registry credentials
          (`config.json`).
        prefer_ssh: Keep `git@host:owner/repo` URLs as SSH instead of
          rewriting them to HTTPS.
        environ: Environment passed to child processes.
    """

    home_dir: pathlib.Path = pathlib.Path(DEFAULT_HOME)
    runtime_dir: pathlib.Path = pathlib.Path(DEFAULT_RUNTIME_DIR)
    docker_config_dir: pathlib.Path | None = None
    prefer_ssh: bool = False
    environ: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> Self:
        """Resolves settings from `environ` (defaults to `os.environ`).

        Raises:
            ConfigurationError: If the home or runtime directory is not a
              valid absolute path.
        """
        if environ is None:
            environ = os.environ
        environ = dict(environ)

        home = environ.get("HOME") or DEFAULT_HOME
        runtime = environ.get("XDG_RUNTIME_DIR") or DEFAULT_RUNTIME_DIR
        for name, value in (("HOME", home), ("XDG_RUNTIME_DIR", runtime)):
            if "\x00" in value:
                raise ConfigurationError(f"{name} contains null bytes")
            if not os.path.isabs(value):
                raise ConfigurationError(
                    f"{name} must be an absolute path, got: {value}"
                )

        docker_config = environ.get("DOCKER_CONFIG")
        prefer_ssh = (
            environ.get("IMAGE_BUILDER_PREFER_SSH", "").lower() in _TRUTHY
        )
        return cls(
            home_dir=pathlib.Path(os.path.normpath(home)),
            runtime_dir=pathlib.Path(os.path.normpath(runtime)),
            docker_config_dir=(
                pathlib.Path(docker_config) if docker_config else None
            ),
            prefer_ssh=prefer_ssh,
            environ=environ,
        )

    @property
    def docker_config(self) -> pathlib.Path:
        if self.docker_config_dir is not None:
            return self.docker_config_dir
        return self.home_dir / ".docker"

    @property
    def auth_file(self) -> pathlib.Path:
        return self.docker_config / "config.json"

    @property
    def buildkit_socket(self) -> pathlib.Path:
        return self.runtime_dir / "buildkitd.sock"

    @property
    def buildkit_config(self) -> pathlib.Path:
        return self.home_dir / ".config" / "buildkit" / "buildkitd.toml"

    @property
    def rootlesskit_state_dir(self) -> pathlib.Path:
        return self.runtime_dir / "rk-buildkit"

    @property
    def workspace_dir(self) -> pathlib.Path:
        return self.home_dir / "workspace"

    @property
    def buildkit_cache_dir(self) -> pathlib.Path:
        return self.home_dir / ".cache" / "buildkit"

    def child_env(self, **overrides: str) -> dict[str, str]:
        """Returns a copy of the environment with `overrides` applied."""
        env = dict(self.environ)
        env.update(overrides)
        return env
