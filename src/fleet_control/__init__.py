"""fleet-control: supervision and recovery for a fleet of LLM worker sessions."""

__version__ = "0.1.0"
