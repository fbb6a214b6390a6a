"""SignDesk: e-signature envelope engine with a hash-chained audit trail."""

__version__ = "0.1.0"
