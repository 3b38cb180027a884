"""futures-agent: signal-driven crypto futures trading agent."""

__version__ = "0.1.0"
