from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from src.observability import incr_metric, log_event


CREDIT_RATES: dict[str, float] = {
    "MARKETING": 0.80,
    "UTILITY": 0.15,
    "AUTHENTICATION": 0.15,
}

TransactionType = Literal[
    "DEDUCTION_BULK_DELIVERED",
    "DEDUCTION_DUPLICATE_BLOCKED",
]


class InsufficientCreditError(Exception):
    def __init__(self, *, required: float, available: float) -> None:
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits: required {required:.2f}, available {available:.2f}")


class CreditLedgerError(Exception):
    """Balance lookup or deduction could not be completed."""


@dataclass
class CreditDeduction:
    success: bool
    amount: float
    new_balance: float | None = None


class CreditLedger(Protocol):
    def balance(self, tenant_id: str) -> float: ...

    def unit_price(self, tenant_id: str, template_category: str) -> float: ...

    def deduct(
        self,
        tenant_id: str,
        amount: float,
        *,
        transaction_type: TransactionType,
        template_category: str,
        template_name: str,
        campaign_name: str | None = None,
        description: str | None = None,
    ) -> CreditDeduction: ...


def round_credits(amount: float) -> float:
    return round(amount + 1e-9, 2)


class SupabaseCreditLedger:
    """Tenant wallet stored in `tenants.credit_balance`, charged via an atomic RPC."""

    def __init__(self, client: Any) -> None:
        self.client = client

    def balance(self, tenant_id: str) -> float:
        try:
            result = self.client.table("tenants").select("credit_balance").eq("id", tenant_id).execute()
        except Exception as exc:
            raise CreditLedgerError(f"credit balance lookup failed: {exc}") from exc
        if not result.data:
            return 0.0
        return float(result.data[0].get("credit_balance") or 0)

    def unit_price(self, tenant_id: str, template_category: str) -> float:
        category = (template_category or "MARKETING").upper()
        try:
            result = (
                self.client.table("tenant_pricing")
                .select("marketing, utility, authentication")
                .eq("tenant_id", tenant_id)
                .execute()
            )
        except Exception as exc:
            raise CreditLedgerError(f"tenant pricing lookup failed: {exc}") from exc
        if result.data:
            custom = result.data[0].get(category.lower())
            if custom is not None:
                return float(custom)
        return CREDIT_RATES.get(category, CREDIT_RATES["MARKETING"])

    def deduct(
        self,
        tenant_id: str,
        amount: float,
        *,
        transaction_type: TransactionType,
        template_category: str,
        template_name: str,
        campaign_name: str | None = None,
        description: str | None = None,
    ) -> CreditDeduction:
        amount = round_credits(amount)
        if amount <= 0:
            return CreditDeduction(success=True, amount=0.0)
        try:
            result = self.client.rpc(
                "deduct_tenant_credits",
                {
                    "p_tenant_id": tenant_id,
                    "p_amount": amount,
                    "p_transaction_type": transaction_type,
                    "p_template_category": template_category,
                    "p_template_name": template_name,
                    "p_campaign_name": campaign_name,
                    "p_description": description,
                },
            ).execute()
        except Exception as exc:
            incr_metric("credits.deductions.failed", transaction_type=transaction_type)
            raise CreditLedgerError(f"credit deduction failed: {exc}") from exc

        data = result.data
        if isinstance(data, list):
            data = data[0] if data else {}
        data = data or {}
        success = bool(data.get("success"))
        new_balance = data.get("new_balance")
        if not success:
            incr_metric("credits.deductions.rejected", transaction_type=transaction_type)
            log_event(
                "credit_deduction_rejected",
                level=logging.WARNING,
                tenant_id=tenant_id,
                amount=amount,
                transaction_type=transaction_type,
                new_balance=new_balance,
            )
        else:
            incr_metric("credits.deductions.applied", transaction_type=transaction_type)
            log_event(
                "credit_deducted",
                tenant_id=tenant_id,
                amount=amount,
                transaction_type=transaction_type,
                template_name=template_name,
                campaign_name=campaign_name,
                new_balance=new_balance,
            )
        return CreditDeduction(
            success=success,
            amount=amount,
            new_balance=float(new_balance) if new_balance is not None else None,
        )
