"""CLI module for safeshell."""
