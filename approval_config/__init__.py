"""
approval_config -- single public entrypoint for approval configuration.

Responsibility:
    Provides the ONLY way to obtain approval configuration at runtime
    through ``get_active_config()``.  Services receive settings from the
    returned ``ApprovalConfiguration`` (see ``approval_config.bridges``)
    rather than reading files or environment variables themselves.

Architecture position:
    Configuration -- sits above ``approval_kernel``.  The kernel MUST NEVER
    import from ``approval_config``.

Invariants enforced:
    - Every configured rule passes ``validate_rule`` against the configured
      role directory before a configuration is returned.
    - Deterministic loading: the same YAML always produces the same
      checksum.

Failure modes:
    - ``FileNotFoundError`` -- configuration file missing.
    - ``KeyError`` -- required key missing.
    - ``ValueError`` -- invalid values or rule validation failures.

Audit relevance:
    Every successful ``get_active_config()`` call emits an
    ``APPROVAL_CONFIG_TRACE`` log entry with the config id, version,
    checksum and directory sizes, tying workflow decisions back to the
    configuration that governed them.
"""

from __future__ import annotations

import logging
from pathlib import Path

from approval_config.loader import load_configuration
from approval_config.schema import ApprovalConfiguration
from approval_engines.rule_engine import validate_rule

_logger = logging.getLogger("approval_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "approval.yaml"


def validate_configuration(config: ApprovalConfiguration) -> list[str]:
    """Every validation error of the configured rules, prefixed by rule name."""
    directory = [
        role.to_definition("config", config.settings.base_currency) for role in config.roles
    ]
    errors: list[str] = []
    for rule in config.rules:
        result = validate_rule(rule.to_draft(), directory)
        errors.extend(f"{rule.name}: {e}" for e in result.errors)
    return errors


def get_active_config(path: Path | None = None) -> ApprovalConfiguration:
    """The ONLY public configuration entrypoint.

    Args:
        path: Override path to the YAML file.  Defaults to the packaged
            ``defaults/approval.yaml``.

    Raises:
        FileNotFoundError: If the file does not exist.
        KeyError: If a required key is missing.
        ValueError: If configuration validation fails.
    """
    config = load_configuration(path or DEFAULT_CONFIG_PATH)

    errors = validate_configuration(config)
    if errors:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    _logger.info(
        "APPROVAL_CONFIG_TRACE",
        extra={
            "trace_type": "APPROVAL_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "base_currency": config.settings.base_currency,
            "role_count": len(config.roles),
            "rule_count": len(config.rules),
        },
    )
    return config


__all__ = [
    "ApprovalConfiguration",
    "DEFAULT_CONFIG_PATH",
    "get_active_config",
    "validate_configuration",
]
