"""omni-upgrades release version (PEP 440). Sent as the User-Agent of every HTTP request."""

__version__ = "0.1.0"
