"""Cascade - reactive workflow execution engine.

Re-evaluates workflow graphs incrementally: only nodes whose inputs changed are
executed again, everything else is served from the content-hashed node cache.
"""

__version__ = "0.1.0"
