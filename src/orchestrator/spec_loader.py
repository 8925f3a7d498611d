"""Gateway declaration loading.

A declaration is a YAML mapping, either flat or wrapped Kubernetes-style
(apiVersion/kind/metadata/spec). The file is size-checked before it is
read, and validation errors are flattened into one message naming every
offending field.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .errors import SpecLoadError
from .models import VpnGatewaySpec

logger = logging.getLogger(__name__)


def _read_yaml(path: Path) -> Any:
    if not path.is_file():
        raise SpecLoadError(f"Spec file not found: {path}")

    try:
        size = path.stat().st_size
        if size > MAX_SPEC_FILE_SIZE_BYTES:
            raise SpecLoadError(
                f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes "
                f"({size} bytes): {path}"
            )
        with path.open(encoding="utf-8") as stream:
            return yaml.safe_load(stream)
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e


def _unwrap(document: Any, source: str) -> dict[str, Any]:
    if not isinstance(document, dict):
        raise SpecLoadError(f"Spec must be a YAML mapping: {source}")
    if "apiVersion" not in document or "spec" not in document:
        return document
    body = document["spec"]
    if not isinstance(body, dict):
        raise SpecLoadError(f"Spec section must be a mapping: {source}")
    return body


def _describe(error: ValidationError) -> str:
    lines = []
    for detail in error.errors():
        field = ".".join(str(part) for part in detail["loc"]) or "<root>"
        lines.append(f"  - {field}: {detail['msg']}")
    return "\n".join(lines)


def parse_spec(raw_data: Any, source: str = "<memory>") -> VpnGatewaySpec:
    """Validate an already-parsed document.

    Raises:
        SpecLoadError: If the document is not a mapping or fails validation.
    """
    body = _unwrap(raw_data, source)
    try:
        return VpnGatewaySpec.model_validate(body)
    except ValidationError as e:
        raise SpecLoadError(f"Validation failed for {source}:\n{_describe(e)}") from e


def load_spec(spec_path: Path) -> VpnGatewaySpec:
    """Load and validate a gateway declaration from a YAML file.

    Raises:
        SpecLoadError: If the file cannot be read, parsed or validated.
    """
    spec = parse_spec(_read_yaml(spec_path), str(spec_path))
    logger.info(
        "Loaded gateway declaration",
        extra={"spec_file": str(spec_path), "vpn_gateway_name": spec.vpn_gateway_name},
    )
    return spec
