"""PO sync alerts: make sure every received purchase order gets a Sales Order."""

__version__ = "0.1.0"
