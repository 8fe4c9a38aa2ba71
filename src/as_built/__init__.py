"""as_built: turn a source tree into structured, LLM-written project documentation."""

__version__ = "0.1.0"
