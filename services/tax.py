"""Two-tier GST computation (intra-state CGST+SGST, inter-state IGST).

The split changes attribution only: the total tax is always
``taxable_amount * rate / 100`` rounded once, and the components always add
up to that total exactly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from config_models import TenantBillingContext
from errors import ValidationError
from utils import money

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class TaxBreakdown:
    taxable_amount: Decimal
    rate: Decimal
    cgst: Decimal
    sgst: Decimal
    igst: Decimal
    total_tax: Decimal

    @property
    def is_intra_state(self) -> bool:
        return self.igst == ZERO and self.total_tax != ZERO

    def to_dict(self) -> dict:
        return {
            "taxable_amount": self.taxable_amount,
            "rate": self.rate,
            "cgst": self.cgst,
            "sgst": self.sgst,
            "igst": self.igst,
            "total_tax": self.total_tax,
        }


def _same_state(tenant_state_code: Optional[str], platform_state_code: Optional[str]) -> bool:
    tenant_code = (tenant_state_code or "").strip().upper()
    platform_code = (platform_state_code or "").strip().upper()
    return bool(tenant_code) and tenant_code == platform_code


def split_tax(total_tax: Decimal, intra_state: bool) -> tuple[Decimal, Decimal, Decimal]:
    """Split an already-rounded total into (cgst, sgst, igst)."""
    if not intra_state:
        return ZERO, ZERO, total_tax
    cgst = money(total_tax / 2)
    return cgst, total_tax - cgst, ZERO


def compute_tax(
    taxable_amount,
    tenant_state_code: Optional[str],
    platform_state_code: Optional[str],
    rate,
) -> TaxBreakdown:
    """Compute the tax on *taxable_amount* at *rate* percent.

    Same state code: CGST and SGST at ``rate/2`` each.  Different (or
    unknown) tenant state: IGST at the full rate.
    """
    taxable = money(taxable_amount)
    rate = Decimal(str(rate))
    if taxable < 0:
        raise ValidationError("Taxable amount must not be negative.")
    if rate < 0:
        raise ValidationError("Tax rate must not be negative.")

    total_tax = money(taxable * rate / Decimal("100"))
    cgst, sgst, igst = split_tax(
        total_tax, _same_state(tenant_state_code, platform_state_code)
    )
    return TaxBreakdown(
        taxable_amount=taxable,
        rate=rate,
        cgst=cgst,
        sgst=sgst,
        igst=igst,
        total_tax=total_tax,
    )


def tax_for_context(taxable_amount, ctx: TenantBillingContext) -> TaxBreakdown:
    return compute_tax(
        taxable_amount, ctx.tenant_state_code, ctx.platform_state_code, ctx.tax_rate
    )
