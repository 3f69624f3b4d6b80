"""
Pulso Source Connectors
────────────────────────
One adapter per upstream provider, each an ordered primary → fallback
chain behind Connector.fetch().

    from source_connectors.dollar import DollarConnector
    result = await DollarConnector().fetch(client)
"""

from .base import Connector, UpstreamError, UpstreamUnavailable

__all__ = ["Connector", "UpstreamError", "UpstreamUnavailable"]
