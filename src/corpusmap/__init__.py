"""corpusmap: triage, deduplicate, embed and cluster a document corpus."""

__version__ = "0.1.0"
