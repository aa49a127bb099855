"""ca-switch: switch AI coding assistant profiles, back them up, sync them."""

__version__ = "0.1.0"
