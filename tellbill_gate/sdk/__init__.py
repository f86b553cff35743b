"""
SDK for the TellBill plan gate.

Provides clients for the backend services the gating core talks to.
"""

from .backend_client import BackendClient

__all__ = ["BackendClient"]
