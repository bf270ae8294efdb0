"""External integrations with the M-PESA API."""
from .mpesa_auth import AuthError, MpesaAuthClient
from .mpesa_client import GatewayError, MpesaClient

__all__ = ["AuthError", "MpesaAuthClient", "GatewayError", "MpesaClient"]
