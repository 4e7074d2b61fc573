"""Actions callable by task nodes."""

from .builtin import BUILTIN_ACTIONS, register_builtin_actions

__all__ = [
    "BUILTIN_ACTIONS",
    "register_builtin_actions",
]
