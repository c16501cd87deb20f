from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional


@dataclass
class AppConfig:
    name: str
    secret_key: str
    log_level: str = "INFO"


@dataclass
class TenantBillingOverrides:
    """Per-tenant overrides of the platform billing defaults (keyed by tenant slug)."""
    tax_rate: Optional[Decimal] = None
    currency: Optional[str] = None
    invoice_number_pattern: Optional[str] = None
    invoice_due_days: Optional[int] = None
    grace_period_days: Optional[int] = None


@dataclass
class BillingConfig:
    platform_state_code: str
    tax_rate: Decimal = Decimal("18")
    currency: str = "INR"
    invoice_number_pattern: str = "INV-[YYYY]-[CCCCC]"
    invoice_due_days: int = 15
    grace_period_days: int = 7
    tenants: Dict[str, TenantBillingOverrides] = field(default_factory=dict)


@dataclass
class GatewayConfig:
    enabled: bool
    name: str
    base_url: str
    api_key: str
    api_secret: str
    timeout: int = 30


@dataclass(frozen=True)
class TenantBillingContext:
    """Resolved billing settings for one tenant, passed into every engine call."""
    tenant_id: int
    tenant_state_code: str
    platform_state_code: str
    tax_rate: Decimal
    currency: str
    invoice_number_pattern: str
    invoice_due_days: int
    grace_period_days: int
