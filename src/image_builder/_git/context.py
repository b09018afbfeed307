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

"""Preparation of the build context handed to a backend."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import pathlib
import shutil
import subprocess
import sys
import tempfile

from image_builder._build.backend import Backend
from image_builder._git import url as git_url
from image_builder._settings import Settings
from image_builder.errors import ConfigurationError
from image_builder.errors import GitError


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]

_BIND_MOUNT = pathlib.Path("/workspace")


@dataclass(frozen=True)
class GitConfig:
    """Where the build context comes from.

    Attributes:
        context: Local directory or git URL; may contain `$VAR` references.
        branch: Branch to check out.
        revision: Commit to check out; wins over `branch`.
        sub_path: Directory inside the context to build from.
        token_file: File holding an access token for HTTPS git URLs.
        token_user: User paired with the token; `oauth2` when empty.
    """

    context: str
    branch: str = ""
    revision: str = ""
    sub_path: str = ""
    token_file: str = ""
    token_user: str = ""


@dataclass
class BuildContext:
    """A prepared build context.

    Exactly one of `path` and `git_ref` is set. When `temp_dir` is set the
    context owns that directory and `release` removes it.
    """

    path: pathlib.Path | None = None
    git_ref: str | None = None
    is_git: bool = False
    temp_dir: pathlib.Path | None = None
    source_path: pathlib.Path | None = None

    def release(self) -> None:
        """Removes the owned temporary directory, if any. Idempotent."""
        temp_dir, self.temp_dir = self.temp_dir, None
        if temp_dir is not None:
            logger.debug("Cleaning up temporary directory: %s", temp_dir)
            shutil.rmtree(temp_dir, ignore_errors=True)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.release()

    @property
    def original_path(self) -> pathlib.Path | None:
        """The local context before it was copied, if it was."""
        return self.source_path or self.path

    def describe(self) -> str:
        if self.git_ref is not None:
            return git_url.mask_token(self.git_ref)
        return str(self.path)


def read_token(path: str) -> str:
    """Reads an access token file, stripping surrounding whitespace."""
    try:
        return pathlib.Path(path).read_text().strip()
    except OSError as e:
        raise ConfigurationError(
            f"failed to read git token file {path}: {e}"
        ) from e


def prepare_context(
    git_config: GitConfig,
    backend: Backend,
    settings: Settings,
    runner: Runner = subprocess.run,
) -> BuildContext:
    """Resolves `git_config` into a context usable by `backend`.

    BuildKit clones git contexts itself, so they are passed through as a
    native reference. Buildah needs a local checkout. Local contexts that
    are bind mounts are copied for BuildKit, which cannot read them from
    inside the rootlesskit namespace.

    Raises:
        ConfigurationError: If the context is missing or does not exist.
        GitError: If cloning or checking out fails.
    """
    context = git_url.expand_env(git_config.context, settings.environ)

    if git_url.is_git_url(context):
        logger.info(
            "Detected git repository context: %s", git_url.mask_token(context)
        )
        normalized = git_url.normalize_url(context, settings.prefer_ssh)
        if git_config.token_file:
            normalized = git_url.add_token(
                normalized,
                read_token(git_config.token_file),
                git_config.token_user,
            )
        if backend is Backend.BUILDKIT:
            ref = git_url.format_native_ref(
                normalized, git_config, git_config.sub_path
            )
            logger.info(
                "Using BuildKit native git context: %s",
                git_url.mask_token(ref),
            )
            return BuildContext(git_ref=ref, is_git=True)
        return _clone(normalized, git_config, settings, runner)

    if not context:
        raise ConfigurationError("build context is required")
    path = pathlib.Path(context)
    if not path.exists():
        raise ConfigurationError(f"context path does not exist: {path}")
    if git_config.sub_path:
        path = path / git_config.sub_path
        if not path.exists():
            raise ConfigurationError(
                f"context sub-path does not exist: {path}"
            )

    if backend is Backend.BUILDKIT and _is_bind_mount(path, settings):
        return _copy_bind_mount(path, settings)

    logger.info("Build context prepared at: %s", path)
    return BuildContext(path=path)


def _is_bind_mount(path: pathlib.Path, settings: Settings) -> bool:
    return path in (settings.workspace_dir, _BIND_MOUNT)


def _copy_bind_mount(path: pathlib.Path, settings: Settings) -> BuildContext:
    settings.buildkit_cache_dir.mkdir(parents=True, exist_ok=True)
    temp_dir = pathlib.Path(
        tempfile.mkdtemp(prefix="context-", dir=settings.buildkit_cache_dir)
    )
    logger.debug("Copying bind-mounted context %s to %s", path, temp_dir)
    try:
        shutil.copytree(path, temp_dir, symlinks=True, dirs_exist_ok=True)
    except (OSError, shutil.Error) as e:
        shutil.rmtree(temp_dir, ignore_errors=True)
        raise ConfigurationError(f"failed to copy context: {e}") from e
    return BuildContext(path=temp_dir, temp_dir=temp_dir, source_path=path)


def _clone(
    url: str, git_config: GitConfig, settings: Settings, runner: Runner
) -> BuildContext:
    settings.workspace_dir.mkdir(parents=True, exist_ok=True)
    temp_dir = pathlib.Path(
        tempfile.mkdtemp(prefix="build-", dir=settings.workspace_dir)
    )
    context = BuildContext(path=temp_dir, is_git=True, temp_dir=temp_dir)
    try:
        args = ["git", "clone"]
        if not git_config.revision:
            args += ["--depth", "1"]
        args += [url, str(temp_dir)]
        logger.info("Cloning git repository: %s", git_url.mask_token(url))
        if runner(args, env=settings.child_env()).returncode != 0:
            raise GitError(f"git clone failed: {git_url.mask_token(url)}")

        if git_config.branch:
            _checkout_branch(temp_dir, git_config.branch, settings, runner)
        if git_config.revision:
            logger.info("Checking out revision: %s", git_config.revision)
            checkout = ["git", "checkout", git_config.revision]
            result = runner(checkout, cwd=temp_dir, env=settings.child_env())
            if result.returncode != 0:
                raise GitError(
                    f"failed to checkout revision {git_config.revision}"
                )

        if git_config.sub_path:
            sub_path = temp_dir / git_config.sub_path
            if not sub_path.exists():
                raise ConfigurationError(
                    f"context sub-path does not exist: {git_config.sub_path}"
                )
            context.path = sub_path
    except BaseException:
        context.release()
        raise

    logger.info("Build context prepared at: %s", context.path)
    return context


def _checkout_branch(
    repo: pathlib.Path, branch: str, settings: Settings, runner: Runner
) -> None:
    logger.info("Checking out branch: %s", branch)
    checkout = ["git", "checkout", branch]
    env = settings.child_env()
    if runner(checkout, cwd=repo, env=env).returncode == 0:
        return
    # A shallow clone only has the default branch.
    runner(["git", "fetch", "origin", branch], cwd=repo, env=env)
    if runner(checkout, cwd=repo, env=env).returncode != 0:
        raise GitError(f"failed to checkout branch {branch}")
