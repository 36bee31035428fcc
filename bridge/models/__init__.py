"""
Database models package.
"""

from .user import EntraSignIn, User

__all__ = ["User", "EntraSignIn"]
