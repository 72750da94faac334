"""Retrieval-augmented chat over interview transcripts."""

__version__ = "0.1.0"
