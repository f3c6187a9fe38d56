"""
modarch_gateway.clients

Outbound client boundaries.

Responsibilities:
- Kubernetes access review client (real and allow-all).
"""

# Package marker.
