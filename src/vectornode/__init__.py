"""VectorNode memory service.

Ingests free-form text per user, decomposes it into
knowledge base entries -> contexts (chunks) -> entities <-> relations,
and serves semantic, temporal and graph queries over the result.
"""

__version__ = "0.1.0"
