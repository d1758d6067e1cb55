"""
                Food Truck Order Fulfillment

Multi-tenant order orchestration backend: daily order numbering,
inventory ledger, payment orchestration with platform fees, stalled-order
escalation and location compliance.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
