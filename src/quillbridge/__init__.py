"""Stream answers from an external conversational CLI into editor documents."""

__version__ = "0.1.0"
