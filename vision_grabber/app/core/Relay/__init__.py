"""Relay server package: HTTP routes, listener lifecycle and firewall provisioning."""

from .firewall import FirewallProvisioner, FirewallResult
from .relay_server import RELAY_RESULT_LABEL, RelayBindError, RelayServer, RelayState

__all__ = [
    "FirewallProvisioner",
    "FirewallResult",
    "RELAY_RESULT_LABEL",
    "RelayBindError",
    "RelayServer",
    "RelayState",
]
