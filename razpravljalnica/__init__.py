"""Chain-replicated discussion board: status codes, records, control plane and client."""

__version__ = "0.1.0"