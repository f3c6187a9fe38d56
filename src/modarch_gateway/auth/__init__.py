"""
modarch_gateway.auth

Authentication/authorization package.

Responsibilities:
- Identity resolution strategies (trusted headers, bearer token).
- Access query derivation and evaluation.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# The remote review calls themselves live in `modarch_gateway.clients`.
