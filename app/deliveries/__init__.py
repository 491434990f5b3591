"""
Delivery marketplace aggregates consumed by the escrow engine.

The engine reads Delivery.status to decide whether settlement is legal,
writes Delivery.payment_status as a mirror of the Payment state, and
increments Company and Driver counters on release. It does not own the
delivery lifecycle or company/driver onboarding.
"""
