"""OTA Hub device agent: provisioning, update channel and A/B installer."""

__version__ = "0.1.0"
