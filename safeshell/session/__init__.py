"""Session management module."""

from safeshell.session.manager import Job, Session, SessionManager

__all__ = ["Job", "Session", "SessionManager"]
