"""Little Microphones: LMID pool, radio programs and member lifecycle hooks."""

__version__ = "1.0.0"
