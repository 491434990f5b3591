"""
Escrow Payment Settlement Engine.

Holds a customer's payment with the processor until the linked delivery
is verified, then splits and releases it (or refunds it, or reroutes it
through a dispute). The Payment record is the local ledger entry and is
kept consistent with processor webhooks, the Delivery aggregate and the
Company/Driver counters.
"""
