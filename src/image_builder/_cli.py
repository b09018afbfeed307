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

"""The main entry-point for the image_builder package."""

from collections.abc import Iterable
import logging
import os
import pathlib
import sys

import click

import image_builder
from image_builder._build import backend as backend_lib
from image_builder._build import preflight
from image_builder._build.request import ATTESTATION_MODES
from image_builder._build.request import DEFAULT_COSIGN_KEY
from image_builder._build.request import DEFAULT_COSIGN_PASSWORD_ENV
from image_builder._build.request import DEFAULT_DOCKERFILE
from image_builder.building import AttestationDeclaration
from image_builder.building import BuildRequest
from image_builder.building import GitConfig
from image_builder.building import SigningOptions
from image_builder.errors import AuthenticationError
from image_builder.errors import ConfigurationError


# Decorator for the build context (local directory or git URL).
_context_option = click.option(
    "-c",
    "--context",
    type=str,
    metavar="CONTEXT",
    required=True,
    help="Build context: a local directory or a git repository URL. "
    "`$VAR` references are expanded.",
)

# Decorator for the path of the build context to use.
_context_sub_path_option = click.option(
    "--context-sub-path",
    type=str,
    metavar="PATH",
    default="",
    help="Directory inside the context to build from.",
)

# Decorator for the Dockerfile location.
_dockerfile_option = click.option(
    "-f",
    "--dockerfile",
    type=str,
    metavar="DOCKERFILE",
    default=DEFAULT_DOCKERFILE,
    show_default=True,
    help="Dockerfile path, relative to the context unless absolute.",
)

# Decorator for the image references to produce.
_destination_option = click.option(
    "-d",
    "--destination",
    "destinations",
    type=str,
    metavar="IMAGE",
    multiple=True,
    help="Image reference to tag and push. Can be repeated.",
)

# Decorator for the build-time variables.
_build_arg_option = click.option(
    "--build-arg",
    "build_args",
    type=str,
    metavar="KEY[=VALUE]",
    multiple=True,
    help="Build-time variable. Without a value, the backend reads it "
    "from its environment. Can be repeated.",
)

# Decorator for image labels.
_label_option = click.option(
    "--label",
    "labels",
    type=str,
    metavar="KEY=VALUE",
    multiple=True,
    help="Image label. Can be repeated.",
)

# Decorator for the simple attestation mode.
_attestation_option = click.option(
    "--attestation",
    type=click.Choice(ATTESTATION_MODES, case_sensitive=False),
    is_flag=False,
    flag_value="min",
    default=None,
    help="Attach SBOM and provenance attestations (BuildKit only). "
    "Defaults to `min` when given without a value.",
)

# Decorator for structured attestations.
_attest_option = click.option(
    "--attest",
    "attest",
    type=str,
    metavar="type=sbom|provenance[,KEY=VALUE...]",
    multiple=True,
    help="Docker-style attestation (BuildKit only). Takes precedence over "
    "--attestation. Can be repeated.",
)


def _parse_pairs(
    values: Iterable[str], option: str, require_value: bool
) -> dict[str, str]:
    pairs = {}
    for value in values:
        key, sep, val = value.partition("=")
        if not key or (require_value and not sep):
            raise click.BadParameter(
                f"invalid format {value!r}, expected KEY=VALUE",
                param_hint=option,
            )
        pairs[key] = val
    return pairs


def _resolve_timestamp(reproducible: bool, timestamp: str | None) -> str:
    if timestamp:
        logging.debug("Using explicit timestamp %s", timestamp)
        return timestamp
    if not reproducible:
        return ""
    epoch = os.environ.get("SOURCE_DATE_EPOCH", "")
    if epoch:
        logging.debug("Using timestamp from SOURCE_DATE_EPOCH: %s", epoch)
        return epoch
    logging.debug("Using default timestamp 0 for reproducible build")
    return "0"


@click.group(
    context_settings=dict(
        help_option_names=["-h", "--help"],
        token_normalize_func=lambda x: x.replace("_", "-"),
    ),
)
@click.version_option(image_builder.__version__, "--version")
@click.option(
    "--log-level",
    type=click.Choice(
        ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False
    ),
    default="INFO",
    show_default=True,
    metavar="LEVEL",
    envvar="IMAGE_BUILDER_LOG_LEVEL",
    help="Set the logging level. This can also be set via the "
    "IMAGE_BUILDER_LOG_LEVEL env var.",
)
def main(log_level: str) -> None:
    """Rootless container image builds with BuildKit or Buildah.

    Use each subcommand's `--help` option for details on each mode.
    """
    logging.basicConfig(
        format="%(message)s", level=getattr(logging, log_level.upper())
    )


@main.command(name="backend")
def _backend() -> None:
    """Print the build backend that would be used.

    BuildKit is used when both `buildkitd` and `buildctl` are installed,
    Buildah otherwise.
    """
    backend = backend_lib.select_backend()
    if backend is None:
        click.echo("No build backend found", err=True)
        sys.exit(1)
    click.echo(backend.value)


@main.command(name="check-environment")
@click.option(
    "--storage-driver",
    type=click.Choice(preflight.STORAGE_DRIVERS, case_sensitive=False),
    default=None,
    help="Storage driver to check. Defaults to STORAGE_DRIVER, then to "
    "the backend default.",
)
def _check_environment(storage_driver: str | None = None) -> None:
    """Check that this host can run rootless builds.

    Reports the installed binaries, user namespace support and whether the
    storage driver can be used. Exits with status 1 when a build cannot
    work here.
    """
    report = preflight.check_environment(storage_driver or "")

    click.echo(f"UID: {report.uid}")
    if report.uid == 0:
        click.echo("  warning: running as root, builds are not rootless")
    backend = report.backend.value if report.backend else "none"
    click.echo(f"Backend: {backend}")
    click.echo("Binaries:")
    for name, path in report.binaries.items():
        click.echo(f"  {name}: {path or 'not found'}")
    limit = report.max_user_namespaces
    click.echo(
        f"User namespaces: "
        f"{'available' if report.user_namespaces else 'unavailable'} "
        f"(max_user_namespaces={'unknown' if limit is None else limit})"
    )
    click.echo(f"Storage driver: {report.storage_driver}")
    for issue in report.storage_issues:
        click.echo(f"  {issue}")

    if not report.ok:
        click.echo("Environment check failed", err=True)
        sys.exit(1)
    click.echo("Environment check passed")


@main.command(name="build")
@_context_option
@_context_sub_path_option
@_dockerfile_option
@_destination_option
@click.option(
    "-t", "--target", type=str, default="", help="Build stage to target."
)
@_build_arg_option
@_label_option
@click.option(
    "--custom-platform",
    type=str,
    metavar="PLATFORM",
    default="",
    help="Target platform, e.g. linux/arm64.",
)
@click.option("--cache", is_flag=True, help="Enable layer caching.")
@click.option(
    "--cache-dir",
    type=str,
    metavar="DIR",
    default="",
    help="Cache directory. Accepted for compatibility; has no effect.",
)
@click.option(
    "--storage-driver",
    type=click.Choice(preflight.STORAGE_DRIVERS, case_sensitive=False),
    default=None,
    help="Storage driver for the backend.",
)
@click.option("--no-push", is_flag=True, help="Build without pushing.")
@click.option(
    "--tar-path",
    type=str,
    metavar="PATH",
    default="",
    help="Export the image to a tar archive instead of pushing.",
)
@click.option(
    "--digest-file",
    type=str,
    metavar="PATH",
    default="",
    help="Write the image digest to this file.",
)
@click.option(
    "--image-name-with-digest-file",
    type=str,
    metavar="PATH",
    default="",
    help="Write `image@digest` to this file.",
)
@click.option(
    "--image-name-tag-with-digest-file",
    type=str,
    metavar="PATH",
    default="",
    help="Write the image and digest as JSON to this file.",
)
@click.option(
    "--insecure", is_flag=True, help="Skip TLS verification for all registries."
)
@click.option(
    "--insecure-pull",
    is_flag=True,
    help="Skip TLS verification when pulling base images.",
)
@click.option(
    "--insecure-registry",
    "insecure_registries",
    type=str,
    metavar="REGISTRY",
    multiple=True,
    help="Registry to reach without TLS verification. Can be repeated.",
)
@click.option(
    "--registry-certificate",
    type=str,
    metavar="DIR",
    default="",
    help="Directory with registry CA certificates.",
)
@click.option(
    "--push-retry",
    type=click.IntRange(min=0),
    default=0,
    help="Push attempts per destination.",
)
@click.option(
    "--image-download-retry",
    type=click.IntRange(min=0),
    default=0,
    help="Retries when pulling base images.",
)
@click.option("--git-branch", type=str, default="", help="Branch to build.")
@click.option(
    "--git-revision",
    type=str,
    default="",
    help="Commit to build. Takes precedence over --git-branch.",
)
@click.option(
    "--git-token-file",
    type=pathlib.Path,
    metavar="PATH",
    default=None,
    help="File holding an access token for HTTPS git URLs.",
)
@click.option(
    "--git-token-user",
    type=str,
    default="",
    help="User for the git token. Defaults to `oauth2`.",
)
@click.option(
    "--reproducible",
    is_flag=True,
    help="Produce a reproducible image. Disables caching.",
)
@click.option(
    "--timestamp",
    type=str,
    metavar="EPOCH",
    default=None,
    help="Source date epoch for reproducible builds. Implies "
    "--reproducible. Defaults to SOURCE_DATE_EPOCH, then 0.",
)
@_attestation_option
@_attest_option
@click.option(
    "--buildkit-opt",
    "buildkit_opts",
    type=str,
    metavar="KEY=VALUE",
    multiple=True,
    help="Raw BuildKit frontend option. Can be repeated.",
)
@click.option(
    "--sign",
    is_flag=True,
    help="Sign pushed images with cosign. Requires attestations.",
)
@click.option(
    "--cosign-key",
    type=str,
    metavar="PATH",
    default=DEFAULT_COSIGN_KEY,
    show_default=True,
    help="cosign private key.",
)
@click.option(
    "--cosign-password-env",
    type=str,
    metavar="VAR",
    default=DEFAULT_COSIGN_PASSWORD_ENV,
    show_default=True,
    help="Environment variable holding the cosign key password.",
)
def _build(
    context: str,
    context_sub_path: str,
    dockerfile: str,
    destinations: Iterable[str],
    target: str,
    build_args: Iterable[str],
    labels: Iterable[str],
    custom_platform: str,
    cache: bool,
    cache_dir: str,
    no_push: bool,
    tar_path: str,
    digest_file: str,
    image_name_with_digest_file: str,
    image_name_tag_with_digest_file: str,
    insecure: bool,
    insecure_pull: bool,
    insecure_registries: Iterable[str],
    registry_certificate: str,
    push_retry: int,
    image_download_retry: int,
    git_branch: str,
    git_revision: str,
    git_token_user: str,
    reproducible: bool,
    attest: Iterable[str],
    buildkit_opts: Iterable[str],
    sign: bool,
    cosign_key: str,
    cosign_password_env: str,
    storage_driver: str | None = None,
    git_token_file: pathlib.Path | None = None,
    timestamp: str | None = None,
    attestation: str | None = None,
) -> None:
    """Build an image from CONTEXT and push it to each destination.

    CONTEXT can be a local directory or a git URL. BuildKit fetches git
    contexts itself; Buildah builds from a local clone.

    Use --tar-path to export an archive instead of pushing, or --no-push to
    only build. With --reproducible, build arguments, labels and
    destinations are emitted in sorted order and timestamps are pinned so
    that identical inputs produce identical images.
    """
    try:
        declarations = tuple(
            AttestationDeclaration.parse(value) for value in attest
        )
    except ConfigurationError as err:
        raise click.BadParameter(str(err), param_hint="--attest") from err

    attestation = (attestation or "").lower()
    if declarations and attestation not in ("", "off"):
        logging.warning(
            "Both --attestation and --attest specified. "
            "Using --attest (ignoring --attestation)"
        )
        attestation = ""
    if sign and not attestation and not declarations:
        raise click.UsageError(
            "--sign requires --attestation to be set (min or max) "
            "or --attest to be used"
        )

    reproducible = reproducible or timestamp is not None
    request = BuildRequest(
        dockerfile=dockerfile,
        destinations=tuple(destinations),
        target=target,
        build_args=_parse_pairs(build_args, "--build-arg", False),
        labels=_parse_pairs(labels, "--label", True),
        platform=custom_platform,
        cache=cache,
        cache_dir=cache_dir,
        storage_driver=(storage_driver or "").lower(),
        insecure=insecure,
        insecure_pull=insecure_pull,
        insecure_registries=tuple(insecure_registries),
        registry_certificate=registry_certificate,
        image_download_retry=image_download_retry,
        push_retry=push_retry,
        no_push=no_push,
        tar_path=tar_path,
        digest_file=digest_file,
        image_name_with_digest_file=image_name_with_digest_file,
        image_name_tag_with_digest_file=image_name_tag_with_digest_file,
        reproducible=reproducible,
        timestamp=_resolve_timestamp(reproducible, timestamp),
        attestation=attestation,
        attestations=declarations,
        buildkit_opts=tuple(buildkit_opts),
        signing=SigningOptions(
            enabled=sign,
            key_path=cosign_key,
            password_env=cosign_password_env,
        ),
    )
    git_config = GitConfig(
        context=context,
        branch=git_branch,
        revision=git_revision,
        sub_path=context_sub_path,
        token_file=str(git_token_file) if git_token_file else "",
        token_user=git_token_user,
    )

    preflight.log_storage_driver(request.storage_driver)

    try:
        result = image_builder.building.Builder().run(request, git_config)
    except AuthenticationError as err:
        click.echo(f"Build failed with error: {err}", err=True)
        click.echo(f"\n{err.remediation}", err=True)
        sys.exit(1)
    except Exception as err:
        click.echo(f"Build failed with error: {err}", err=True)
        sys.exit(1)

    for destination, digest in sorted(result.digests.items()):
        click.echo(f"{destination}: {digest}")
    click.echo("Build succeeded")
