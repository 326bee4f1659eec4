"""
Retrieval module for semantic search over chatbot knowledge bases.
"""

# allows users to do: from app.retrieval import RetrievalClient
# without it, users do: from app.retrieval.semantic_search import RetrievalClient
from .semantic_search import RetrievalClient, PgVectorSearch, namespace_for_chatbot

__all__ = ['RetrievalClient', 'PgVectorSearch', 'namespace_for_chatbot']
