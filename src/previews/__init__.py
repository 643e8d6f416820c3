"""Link preview metadata resolution and caching."""

__version__ = "0.3.0"
