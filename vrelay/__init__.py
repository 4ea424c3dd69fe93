"""Rule-based proxy relay: configuration, outbound chains, routing, relaying and traffic counters."""

__version__ = "0.1.0"

__all__ = ["__version__"]