"""
RAG (Retrieval-Augmented Generation) module: the chat turn pipeline and its collaborators.
"""
from .conversation_store import ConversationStore
from .generation import build_system_prompt
from .pipeline import ChatTurnPipeline

__all__ = ['ChatTurnPipeline', 'ConversationStore', 'build_system_prompt']
