"""bob-control — supervise coding-agent CLIs behind shared rooms."""

__version__ = "1.0.0"
