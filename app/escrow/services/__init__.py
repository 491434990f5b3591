"""
Escrow services for coordinating payment operations.

This module provides:
- PaymentService: Payment initiation, polling verification, cash handling
- ChargeService: Applies charge outcomes reported by Stripe
- SettlementService: Releases or refunds held payments exactly once
- DisbursementService: Executes transfers and refunds against Stripe
- DisputeService: Raises, documents and resolves disputes

Usage:
    from escrow.services import PaymentService, SettlementService

    result = PaymentService.initiate_payment(delivery.id, customer=user)

    # Later, once the delivery is completed
    result = SettlementService.settle_payment(payment.id)
    if result.success:
        print(result.data.transfer_id)
"""

from escrow.services.charge_service import ChargeOutcome, ChargeService
from escrow.services.disbursement_service import DisbursementService
from escrow.services.dispute_service import DisputeService, EvidenceItem
from escrow.services.payment_service import (
    InitiatedPayment,
    PaymentService,
    VerificationResult,
)
from escrow.services.settlement_service import SettlementResult, SettlementService

__all__ = [
    "ChargeOutcome",
    "ChargeService",
    "DisbursementService",
    "DisputeService",
    "EvidenceItem",
    "InitiatedPayment",
    "PaymentService",
    "SettlementResult",
    "SettlementService",
    "VerificationResult",
]
