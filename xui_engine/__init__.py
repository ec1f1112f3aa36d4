"""Control plane for an Xray proxy appliance.

Builds the Xray configuration from stored inbounds, supervises the xray
process and meters per-inbound traffic against quotas.
"""

__version__ = "0.3.0"
