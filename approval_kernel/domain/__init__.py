"""Pure domain types for the approval kernel (zero I/O)."""
