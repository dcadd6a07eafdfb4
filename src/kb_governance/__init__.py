"""Knowledge-base mirror sync and content governance."""

__version__ = "0.1.0"
