"""
modarch_gateway.routing

Routing package.

Responsibilities:
- Prefix routing table with path rewrite.
- Upstream name -> target resolution.
"""

# Package marker.
