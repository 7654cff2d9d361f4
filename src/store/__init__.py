"""
Persistence of users as Salt state and pillar YAML files.
"""

from .yaml_store import UserStateStore, load_users, save_users

__all__ = ["UserStateStore", "load_users", "save_users"]
