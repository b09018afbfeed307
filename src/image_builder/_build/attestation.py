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

"""Translation of attestation settings into BuildKit frontend options."""

from __future__ import annotations

from collections.abc import Iterable
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
import logging

from image_builder._build.request import AttestationDeclaration
from image_builder.errors import ConfigurationError


logger = logging.getLogger(__name__)

_SIMPLE_MODES = {
    "min": ("attest:sbom=false", "attest:provenance=mode=min"),
    "max": ("attest:sbom=true", "attest:provenance=mode=max"),
}

_SBOM_SCAN_ARGS = {
    "scan-context": "build-arg:BUILDKIT_SBOM_SCAN_CONTEXT=1",
    "scan-stage": "build-arg:BUILDKIT_SBOM_SCAN_STAGE=1",
}

_PROVENANCE_ORDER = (
    "builder-id",
    "reproducible",
    "inline-only",
    "version",
    "filename",
)


@dataclass
class AttestationOptions:
    """Assembled attestation settings.

    Attributes:
        opts: Values for `--opt`, in emission order.
        build_args: SBOM scanner toggles, emitted as `--opt` before `opts`.
    """

    opts: list[str] = field(default_factory=list)
    build_args: list[str] = field(default_factory=list)


def _simple_mode(mode: str) -> list[str]:
    if mode in ("", "off"):
        return []
    if mode not in _SIMPLE_MODES:
        raise ConfigurationError(
            f"invalid attestation mode {mode!r} (expected off, min or max)"
        )
    return list(_SIMPLE_MODES[mode])


def _sbom(params: dict[str, str], build_args: list[str]) -> str:
    if not params:
        return "attest:sbom=true"

    for toggle, build_arg in _SBOM_SCAN_ARGS.items():
        if params.pop(toggle, "").lower() == "true":
            build_args.append(build_arg)

    parts = []
    if "generator" in params:
        parts.append(f"generator={params.pop('generator')}")
    else:
        parts.append("true")
    parts.extend(f"{key}={params[key]}" for key in sorted(params))
    return "attest:sbom=" + ",".join(parts)


def _provenance(params: dict[str, str]) -> str:
    parts = [f"mode={params.pop('mode', '') or 'max'}"]
    for key in _PROVENANCE_ORDER:
        if key in params:
            parts.append(f"{key}={params.pop(key)}")
    parts.extend(f"{key}={params[key]}" for key in sorted(params))
    return "attest:provenance=" + ",".join(parts)


def _structured(
    declarations: Iterable[AttestationDeclaration],
    build_args: list[str],
) -> list[str]:
    opts = []
    for declaration in declarations:
        params = dict(declaration.params)
        match declaration.kind:
            case "sbom":
                opts.append(_sbom(params, build_args))
            case "provenance":
                opts.append(_provenance(params))
            case _:
                raise ConfigurationError(
                    f"unknown attestation type {declaration.kind!r}"
                )
    return opts


def assemble(
    mode: str,
    declarations: Sequence[AttestationDeclaration] = (),
    raw_opts: Sequence[str] = (),
) -> AttestationOptions:
    """Builds the BuildKit options for the requested attestations.

    Structured declarations take precedence over the simple `mode`. Raw
    options are passed through unchecked, after everything else.

    Raises:
        ConfigurationError: If `mode` or a declaration kind is unknown.
    """
    result = AttestationOptions()
    if declarations:
        result.opts = _structured(declarations, result.build_args)
        logger.info("Attestation mode: advanced (--attest)")
    else:
        result.opts = _simple_mode(mode)
        if result.opts:
            logger.info("Attestation mode: %s", mode)
        else:
            logger.debug("Attestations disabled")

    for opt in raw_opts:
        logger.debug("Adding BuildKit option: %s", opt)
        result.opts.append(opt)
    return result
