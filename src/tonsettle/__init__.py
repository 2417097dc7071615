"""tonsettle - TON deposit and withdrawal settlement backend."""

__version__ = "0.1.0"
