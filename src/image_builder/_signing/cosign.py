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

"""Signing pushed images with cosign.

Images are signed by digest whenever the digest is known, either from the
build output or from the registry. Signing a tag is a fallback that is
logged as a warning, since the tag may move after signing.
"""

from __future__ import annotations

from collections.abc import Callable
from collections.abc import Mapping
import logging
import os
import subprocess

from image_builder._build.request import BuildRequest
from image_builder._build.request import OutputMode
from image_builder._oci import registry as oci_registry
from image_builder._settings import Settings
from image_builder.errors import SigningError


logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]
Resolver = Callable[[str], str]


def _reference_to_sign(
    destination: str, digest: str | None, resolver: Resolver | None
) -> str:
    if not digest and resolver is not None:
        try:
            digest = resolver(destination)
        except (ValueError, OSError) as e:
            logger.warning("Could not resolve digest of %s: %s", destination, e)
            digest = None

    if digest and oci_registry.is_valid_digest(digest):
        reference = oci_registry.pin_digest(destination, digest)
        logger.info("Signing with digest reference: %s", reference)
        return reference

    logger.warning(
        "No digest found for %s, signing with tag (not recommended)",
        destination,
    )
    return destination


def sign_images(
    request: BuildRequest,
    digests: Mapping[str, str],
    *,
    settings: Settings,
    runner: Runner = subprocess.run,
    resolver: Resolver | None = None,
) -> list[str]:
    """Signs every pushed destination with the configured cosign key.

    Args:
        request: The build request; nothing happens unless signing is
          enabled and the images were pushed.
        digests: Digests reported by the build or push, by destination.
        settings: Supplies the environment for cosign and the password.
        runner: Runs the cosign command.
        resolver: Looks up the digest of a destination in the registry
          when `digests` has none.

    Returns:
        The references that were signed.

    Raises:
        SigningError: If cosign fails.
    """
    signing = request.signing
    if not signing.enabled or request.output_mode is not OutputMode.PUSH:
        return []
    if not signing.key_path or not os.path.exists(signing.key_path):
        logger.warning(
            "Signing requested but cosign key %r is not available, "
            "skipping signature",
            signing.key_path,
        )
        return []

    env = settings.child_env(COSIGN_EXPERIMENTAL="1")
    if signing.password_env:
        password = settings.environ.get(signing.password_env, "")
        if password:
            env["COSIGN_PASSWORD"] = password
        else:
            logger.warning(
                "Cosign password environment variable %s is not set or empty",
                signing.password_env,
            )

    logger.info("Signing images with cosign...")
    signed = []
    for destination in request.destinations:
        reference = _reference_to_sign(
            destination, digests.get(destination), resolver
        )
        args = ["cosign", "sign", "--key", signing.key_path]
        if request.insecure or request.insecure_registries:
            args.append("--allow-insecure-registry")
        args.append(reference)

        logger.debug("Executing: %s", " ".join(args))
        if runner(args, env=env).returncode != 0:
            raise SigningError(f"cosign failed to sign {reference}")
        logger.info("Successfully signed: %s", reference)
        signed.append(reference)
    return signed
