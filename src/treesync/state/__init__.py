"""Observable state tree.

The sync engine talks to trees only through the :class:`TreeHooks` protocol
and the ``get``/``set``/``merge``/``batch`` methods.
"""

from treesync.state.tree import Mutation, StateTree, TreeHooks

__all__ = ["Mutation", "StateTree", "TreeHooks"]
