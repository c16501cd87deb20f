"""Configuration loading: YAML file plus environment-variable overrides."""

from __future__ import annotations

import logging
import os
import re
import secrets
from dataclasses import fields
from decimal import Decimal, InvalidOperation

import yaml

from config_models import AppConfig, BillingConfig, GatewayConfig, TenantBillingOverrides

logger = logging.getLogger(__name__)

_TOP_LEVEL_SECTIONS = {"app", "billing", "gateway", "database"}
_DATABASE_KEYS = {"uri"}
_COUNTER_RE = re.compile(r"\[C+\]")


class ConfigError(ValueError):
    """Raised when the configuration file contains unknown or invalid values."""


def _reject_unknown(section: str, raw: dict, allowed) -> None:
    unknown = sorted(set(raw) - set(allowed))
    if unknown:
        raise ConfigError(f"Unknown key(s) in '{section}': {', '.join(unknown)}")


def _field_names(cls) -> set[str]:
    return {f.name for f in fields(cls)}


def _env_bool(name: str, fallback) -> bool:
    return os.environ.get(name, str(fallback)).lower() in ("true", "1", "yes")


def _to_decimal(section: str, key: str, value) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ConfigError(f"'{section}.{key}' must be a number, got {value!r}")
    if result < 0:
        raise ConfigError(f"'{section}.{key}' must not be negative")
    return result


def _to_int(section: str, key: str, value) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{section}.{key}' must be an integer, got {value!r}")
    if result < 0:
        raise ConfigError(f"'{section}.{key}' must not be negative")
    return result


def _check_number_pattern(section: str, pattern) -> str:
    if not isinstance(pattern, str) or not _COUNTER_RE.search(pattern):
        raise ConfigError(
            f"'{section}.invoice_number_pattern' must contain a counter tag such as [CCCCC]"
        )
    return pattern


def _load_tenant_overrides(raw: dict) -> dict[str, TenantBillingOverrides]:
    overrides: dict[str, TenantBillingOverrides] = {}
    for slug, block in (raw or {}).items():
        section = f"billing.tenants.{slug}"
        block = block or {}
        if not isinstance(block, dict):
            raise ConfigError(f"'{section}' must be a mapping")
        _reject_unknown(section, block, _field_names(TenantBillingOverrides))
        overrides[str(slug)] = TenantBillingOverrides(
            tax_rate=(
                _to_decimal(section, "tax_rate", block["tax_rate"])
                if "tax_rate" in block else None
            ),
            currency=block.get("currency"),
            invoice_number_pattern=(
                _check_number_pattern(section, block["invoice_number_pattern"])
                if "invoice_number_pattern" in block else None
            ),
            invoice_due_days=(
                _to_int(section, "invoice_due_days", block["invoice_due_days"])
                if "invoice_due_days" in block else None
            ),
            grace_period_days=(
                _to_int(section, "grace_period_days", block["grace_period_days"])
                if "grace_period_days" in block else None
            ),
        )
    return overrides


def parse_config(raw: dict):
    """Build the typed configuration from an already-parsed mapping.

    Unknown keys are rejected here, once, instead of being ignored at use time.
    Returns (AppConfig, BillingConfig, GatewayConfig, database_uri).
    """
    raw = raw or {}
    _reject_unknown("<root>", raw, _TOP_LEVEL_SECTIONS)

    app_cfg = raw.get("app") or {}
    billing_cfg = raw.get("billing") or {}
    gateway_cfg = raw.get("gateway") or {}
    db_cfg = raw.get("database") or {}

    _reject_unknown("app", app_cfg, _field_names(AppConfig))
    _reject_unknown("billing", billing_cfg, _field_names(BillingConfig))
    _reject_unknown("gateway", gateway_cfg, _field_names(GatewayConfig))
    _reject_unknown("database", db_cfg, _DATABASE_KEYS)

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml."
        )

    platform_state_code = os.environ.get(
        "BILLING_PLATFORM_STATE_CODE", billing_cfg.get("platform_state_code", "")
    )
    if not platform_state_code:
        raise ConfigError("'billing.platform_state_code' is required")

    billing = BillingConfig(
        platform_state_code=str(platform_state_code),
        tax_rate=_to_decimal(
            "billing", "tax_rate",
            os.environ.get("BILLING_TAX_RATE", billing_cfg.get("tax_rate", "18")),
        ),
        currency=os.environ.get("BILLING_CURRENCY", billing_cfg.get("currency", "INR")),
        invoice_number_pattern=_check_number_pattern(
            "billing", billing_cfg.get("invoice_number_pattern", "INV-[YYYY]-[CCCCC]")
        ),
        invoice_due_days=_to_int(
            "billing", "invoice_due_days", billing_cfg.get("invoice_due_days", 15)
        ),
        grace_period_days=_to_int(
            "billing", "grace_period_days", billing_cfg.get("grace_period_days", 7)
        ),
        tenants=_load_tenant_overrides(billing_cfg.get("tenants")),
    )

    gateway = GatewayConfig(
        enabled=_env_bool("GATEWAY_ENABLED", gateway_cfg.get("enabled", False)),
        name=os.environ.get("GATEWAY_NAME", gateway_cfg.get("name", "razorpay")),
        base_url=os.environ.get("GATEWAY_BASE_URL", gateway_cfg.get("base_url", "")),
        api_key=os.environ.get("GATEWAY_API_KEY", gateway_cfg.get("api_key", "")),
        api_secret=os.environ.get("GATEWAY_API_SECRET", gateway_cfg.get("api_secret", "")),
        timeout=_to_int("gateway", "timeout", gateway_cfg.get("timeout", 30)),
    )

    return (
        AppConfig(
            name=app_cfg.get("name", "Billing Ledger"),
            secret_key=secret_key,
            log_level=os.environ.get("LOG_LEVEL", app_cfg.get("log_level", "INFO")),
        ),
        billing,
        gateway,
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///billing.db")),
    )


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, BillingConfig, GatewayConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")
    return parse_config(raw)


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
