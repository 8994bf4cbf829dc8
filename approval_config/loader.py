"""
Configuration Loader (``approval_config.loader``).

Responsibility
--------------
Loads an approval configuration YAML file and parses it into the typed
``approval_config.schema`` dataclasses.  Runtime callers go through
``approval_config.get_active_config()``.

Invariants enforced
-------------------
* All parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required fields.
* Monetary values and exchange rates are parsed as ``Decimal`` from their
  string form, never through ``float``.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Invalid numbers or duplicate names  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from approval_config.schema import ApprovalConfiguration, EngineSettings, RoleDef, RuleDef


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"{field_name}: expected a number, got {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"{field_name}: cannot parse {value!r} as a decimal") from None


def _optional_decimal(value: Any, field_name: str) -> Decimal | None:
    return parse_decimal(value, field_name) if value is not None else None


def parse_settings(data: dict[str, Any]) -> EngineSettings:
    base_currency = str(data.get("base_currency", "INR")).upper()
    rates = {
        str(code).upper(): parse_decimal(rate, f"exchange_rates.{code}")
        for code, rate in (data.get("exchange_rates") or {}).items()
    }
    rates.setdefault(base_currency, Decimal("1"))
    if rates[base_currency] != Decimal("1"):
        raise ValueError(
            f"exchange_rates.{base_currency}: base currency rate must be 1"
        )
    for code, rate in rates.items():
        if rate <= 0:
            raise ValueError(f"exchange_rates.{code}: rate must be positive")

    return EngineSettings(
        base_currency=base_currency,
        exchange_rates=rates,
        default_timeout_hours=int(data.get("default_timeout_hours", 24)),
        escalation_extension_hours=int(data.get("escalation_extension_hours", 24)),
        escalation_interval_seconds=int(data.get("escalation_interval_seconds", 300)),
        audit_retry_attempts=int(data.get("audit_retry_attempts", 3)),
        audit_backoff_seconds=float(data.get("audit_backoff_seconds", 0.5)),
        audit_max_page_size=int(data.get("audit_max_page_size", 500)),
        failsafe_queue_path=data.get("failsafe_queue_path"),
        suspicious_window_hours=int(data.get("suspicious_window_hours", 24)),
        require_rejection_comment=bool(data.get("require_rejection_comment", False)),
    )


def parse_role(data: dict[str, Any]) -> RoleDef:
    """
    Parse a ``RoleDef`` from a dict.

    Raises:
        KeyError: if ``name`` or ``level`` is missing.
    """
    return RoleDef(
        name=data["name"],
        level=int(data["level"]),
        max_approval_amount=_optional_decimal(
            data.get("max_approval_amount"), f"roles.{data['name']}.max_approval_amount",
        ),
        can_approve=bool(data.get("can_approve", True)),
        can_reject=bool(data.get("can_reject", True)),
        can_delegate=bool(data.get("can_delegate", False)),
        can_modify=bool(data.get("can_modify", False)),
    )


def parse_rule(data: dict[str, Any]) -> RuleDef:
    """
    Parse a ``RuleDef`` from a dict.

    Raises:
        KeyError: if ``name``, ``min_amount`` or ``approver_roles`` is missing.
    """
    name = data["name"]
    timeout = data.get("approval_timeout_hours")
    return RuleDef(
        name=name,
        min_amount=parse_decimal(data["min_amount"], f"rules.{name}.min_amount"),
        approver_roles=tuple(data["approver_roles"]),
        required_approvals=int(data.get("required_approvals", 1)),
        max_amount=_optional_decimal(data.get("max_amount"), f"rules.{name}.max_amount"),
        currency=data.get("currency"),
        invoice_type=data.get("invoice_type"),
        parallel_approval=bool(data.get("parallel_approval", False)),
        approval_timeout_hours=int(timeout) if timeout is not None else None,
        escalate_to_role=data.get("escalate_to_role"),
        priority=int(data.get("priority", 0)),
        description=data.get("description"),
    )


def _unique_names(items: tuple, kind: str) -> None:
    seen: set[str] = set()
    for item in items:
        if item.name in seen:
            raise ValueError(f"Duplicate {kind} name: {item.name}")
        seen.add(item.name)


def parse_configuration(data: dict[str, Any]) -> ApprovalConfiguration:
    """Parse the root document into an ``ApprovalConfiguration``."""
    roles = tuple(parse_role(r) for r in data.get("roles") or ())
    rules = tuple(parse_rule(r) for r in data.get("rules") or ())
    _unique_names(roles, "role")
    _unique_names(rules, "rule")
    return ApprovalConfiguration(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        settings=parse_settings(data.get("settings") or {}),
        roles=roles,
        rules=rules,
        checksum=compute_checksum(data),
    )


def load_configuration(path: Path) -> ApprovalConfiguration:
    return parse_configuration(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
