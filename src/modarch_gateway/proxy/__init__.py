"""
modarch_gateway.proxy

Proxy execution package.

Responsibilities:
- Per-upstream connection pools, header filtering, streamed responses.
"""

# Package marker.
