"""
Common utilities for saltui-users.

Modules:
- errors: Error taxonomy shared by the model and persistence layers
- crypto: Fernet encryption of sensitive pillar values
"""

__all__ = [
    "crypto",
    "errors",
]
