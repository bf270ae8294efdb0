"""
M-PESA Gateway

Initiates STK push payment requests against the M-PESA API and reconciles
their asynchronous callbacks:
1. Single-flight OAuth token cache
2. Correlation-id based matching of callbacks to transactions
3. Compare-and-set terminal status updates
"""

__version__ = "1.0.0"
