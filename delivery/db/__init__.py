# Database module
from .engine import build_engine, get_engine, session_scope, check_connection

__all__ = ["build_engine", "get_engine", "session_scope", "check_connection"]
