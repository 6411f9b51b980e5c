"""kbforge - Knowledge-base ingestion core.

Background job scheduling and text chunking for document and URL ingestion.
"""

__version__ = "0.4.0"
__all__ = ["__version__"]
