"""
modarch_gateway.services

Service layer.

Responsibilities:
- The request pipeline composing identity, routing, access and proxy stages.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# Routers stay thin; sequencing and failure logging live here.
