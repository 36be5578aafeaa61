"""vaultwatch: incremental folder indexing, embeddings and similarity."""

__version__ = "0.1.0"
