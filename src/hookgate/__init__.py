"""hookgate - out-of-process hook dispatch for an API gateway."""

__version__ = "0.1.0"
