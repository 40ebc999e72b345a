"""toolbridge -- tool-call recovery and streaming aggregation for LLM chat backends."""

__version__ = "0.1.0"
