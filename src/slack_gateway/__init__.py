"""Slack Gateway

A multi-tenant webhook gateway for Slack that hosts:
- Signed event ingestion, one route per tenant connection
- Tiered tenant configuration (database, Redis, local disk)
- Per-thread conversation context with summarisation
- Streaming model replies edited into a placeholder message
"""

__version__ = "0.1.0"
