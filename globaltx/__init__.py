"""Global transactions, TCC branches and RPC framing for a transaction coordinator client."""

__version__ = "0.1.0"