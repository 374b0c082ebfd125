"""shipline - build, verify and promote web application releases."""

__version__ = "0.1.0"
