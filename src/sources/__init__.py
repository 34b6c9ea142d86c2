"""
Service sources for the port-forwarding operator.

A service source supplies the Services whose ports should be forwarded and
keeps the finalizer that guards rule cleanup.
"""

from sources.base import ServiceSource, ServiceSourceError

__all__ = ["ServiceSource", "ServiceSourceError"]
