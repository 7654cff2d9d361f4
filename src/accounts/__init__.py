"""
User accounts managed through SaltStack.

This package defines the user record, its mapping to Salt state and pillar
entries, and the name-keyed collection the documents are built from.
"""

from .models import User
from .users import Users

__all__ = ["User", "Users"]
