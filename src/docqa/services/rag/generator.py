from __future__ import annotations

import logging

from docqa.errors import GenerationError
from docqa.llm import ChatClient, ChatMessage, ChatResult
from docqa.services.rag.types import ContextBundle

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = (
    "You are a careful analyst answering questions about the indexed documents. "
    "Use only the provided context. Cite the source file for each claim when possible. "
    "If the context is insufficient, say so briefly instead of guessing."
)


def build_messages(
    *,
    question: str,
    bundle: ContextBundle,
    instructions: str = DEFAULT_INSTRUCTIONS,
) -> list[ChatMessage]:
    return [
        {"role": "system", "content": instructions},
        {
            "role": "user",
            "content": f"Context:\n{bundle.render()}\n\nQuestion: {question}",
        },
    ]


class AnswerGenerator:
    def __init__(self, chat_client: ChatClient, *, instructions: str = DEFAULT_INSTRUCTIONS) -> None:
        self._chat_client = chat_client
        self._instructions = instructions

    def generate(
        self, question: str, bundle: ContextBundle, *, timeout: float | None = None
    ) -> ChatResult:
        messages = build_messages(question=question, bundle=bundle, instructions=self._instructions)
        result = self._chat_client.complete(messages, timeout=timeout)
        if not result.answer.strip():
            raise GenerationError(f"Model {result.model} returned an empty answer")

        logger.info(
            "generated answer model=%s used_fallback=%s context_items=%d",
            result.model,
            result.used_fallback,
            len(bundle.items),
        )
        return result
