"""
Exception types for the socfield simulator.

All of them derive from ValueError as well, so callers that only
guard against bad arguments keep working.
"""


class SocFieldError(Exception):
    """Base class for socfield errors."""


class TopologyError(SocFieldError, ValueError):
    """Invalid topology request or a malformed adjacency graph."""


class ShapeMismatchError(SocFieldError, ValueError):
    """Per-node arrays disagree in length with the graph or with each other."""


class ConfigError(SocFieldError, ValueError):
    """Unknown parameter/preset name or an invalid configuration."""
