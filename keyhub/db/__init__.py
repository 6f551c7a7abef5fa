"""Database package exports."""

from keyhub.db.base import Base
from keyhub.db.session import dispose_engine, get_engine, get_session_factory

__all__ = ["Base", "dispose_engine", "get_engine", "get_session_factory"]
