"""Proxy fulfillment service.

Sells mobile proxy connections: quota reservation at checkout, NOWPayments
reconciliation, provisioning on the device API and order expiry.
"""

__version__ = "1.0.0"
__description__ = "Proxy fulfillment service"
