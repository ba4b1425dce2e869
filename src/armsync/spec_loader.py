"""Spec file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import ResourceSpec, TagPolicySpec

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _read_yaml_mapping(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise SpecLoadError(f"Spec file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {path}")

    # Kubernetes-style format: apiVersion, kind, metadata, spec
    if "kind" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
        return spec_data

    return raw_data


def _validate(model: type[ModelT], data: dict[str, Any], path: Path) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e


def load_resource_spec(path: Path) -> ResourceSpec:
    """Load and validate a resource spec from YAML.

    Args:
        path: Path to the spec file.

    Returns:
        Validated ResourceSpec.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    spec = _validate(ResourceSpec, _read_yaml_mapping(path), path)
    logger.info("Loaded resource spec for %s from %s", spec.resource_id, path)
    return spec


def load_tag_policy(path: Path) -> TagPolicySpec:
    """Load and validate a tag policy from YAML.

    Expected format:
    ```yaml
    defaultTags:
      costCenter: "1234"
    ignoreTags:
      keys: ["createdBy"]
      keyPrefixes: ["policy-"]
    ```

    Raises:
        SpecLoadError: If the policy cannot be loaded or fails validation.
    """
    policy = _validate(TagPolicySpec, _read_yaml_mapping(path), path)
    logger.info("Loaded tag policy from %s", path)
    return policy
