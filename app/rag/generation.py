"""
Prompt assembly for the chat turn.

Retrieved chunks are embedded verbatim in the system prompt, each labelled with
its page/section when known. With no chunks the model gets a plain
general-assistant instruction instead.
"""
from typing import List, Sequence

from app.models import ChatMessage, RetrievedChunk

CONTEXT_SEPARATOR = "\n\n---\n\n"

GROUNDED_SYSTEM_PROMPT = """You are a helpful assistant that answers questions based on the provided context. Use the following context to answer the user's question:

{context}

If the context doesn't contain relevant information to answer the question, say so and provide a helpful response based on your general knowledge."""

GENERAL_SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer the user's question to the best of your ability "
    "using your general knowledge."
)


def build_context(chunks: Sequence[RetrievedChunk]) -> str:
    """Join chunk texts, prefixing '[Page 3, Introduction]' style labels where known."""
    parts = []
    for chunk in chunks:
        location = chunk.location_label()
        parts.append(f"[{location}]\n{chunk.text}" if location else chunk.text)
    return CONTEXT_SEPARATOR.join(parts)


def build_system_prompt(chunks: Sequence[RetrievedChunk]) -> str:
    if not chunks:
        return GENERAL_SYSTEM_PROMPT
    return GROUNDED_SYSTEM_PROMPT.format(context=build_context(chunks))


def build_messages(system_prompt: str, history: Sequence[ChatMessage]) -> List[dict]:
    """System prompt followed by the full conversation history, in provider chat format."""
    messages = [{'role': 'system', 'content': system_prompt}]
    for msg in history:
        messages.append({'role': msg.role, 'content': msg.content})
    return messages
