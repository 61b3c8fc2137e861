"""Self-directed code mutation loop grounded in a ranked knowledge base."""

__version__ = "0.1.0"
