"""UniFi Network controller rule store."""

from stores.unifi.client import UniFiAPIError, UniFiRuleStore

__all__ = ["UniFiAPIError", "UniFiRuleStore"]
