"""safeshell - sandboxed command execution for AI agents."""

__version__ = "0.1.0"
__logo__ = "🐚"
