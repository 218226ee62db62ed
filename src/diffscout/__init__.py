"""diffscout: tool-calling code change analysis."""

__version__ = "0.1.0"
