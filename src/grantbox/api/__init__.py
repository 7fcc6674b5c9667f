"""HTTP surface of the execution service."""
