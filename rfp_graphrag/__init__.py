"""RFP GraphRAG hybrid knowledge retrieval engine."""

__version__ = "0.1.0"
