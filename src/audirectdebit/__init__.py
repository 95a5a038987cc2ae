"""AU Direct Debit gateway with stateless web-form MAC verification."""

__version__ = "0.1.0"
