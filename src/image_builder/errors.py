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

"""Exceptions raised while orchestrating a build."""


class ConfigurationError(ValueError):
    """The build request or its inputs are invalid."""


class BackendUnavailableError(RuntimeError):
    """Neither BuildKit nor Buildah is installed."""

    def __init__(self):
        super().__init__(
            "no build backend available: install buildkitd and buildctl "
            "(BuildKit) or buildah (Buildah)"
        )


class DaemonStartError(RuntimeError):
    """The BuildKit daemon could not be started or never became ready."""


class GitError(RuntimeError):
    """Cloning or checking out a git context failed."""


class BuildError(RuntimeError):
    """The backend build command exited with an error."""


class PushError(RuntimeError):
    """Pushing an image to a registry failed."""


class AuthenticationError(PushError):
    """The registry rejected the push credentials.

    Attributes:
        destination: The image reference that was being pushed.
        remediation: Human readable instructions to fix the credentials.
    """

    def __init__(self, destination: str, output: str, remediation: str):
        super().__init__(
            f"authentication failed pushing {destination}: {output.strip()}"
        )
        self.destination = destination
        self.remediation = remediation


class SigningError(RuntimeError):
    """cosign failed to sign an image."""
