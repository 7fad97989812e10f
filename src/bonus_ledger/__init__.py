"""Points ledger and redemption engine for multi-tenant bonus programs."""

__version__ = "0.1.0"
