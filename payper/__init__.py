"""
Payper payment orchestration.

Turns a user's payment submission into a durable ledger record, coordinates
the payment intent and card confirmation steps with the processor, and keeps
the ledger consistent whichever step fails.
"""

__version__ = "1.0.0"
