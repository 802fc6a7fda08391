"""UtilitySign signing gateway: backend request gateway plus webhook-driven signing workflow."""

__version__ = "1.0.0"
