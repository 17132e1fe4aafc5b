"""Turn-processing core for a conversational call-handling agent."""

__version__ = "0.1.0"
