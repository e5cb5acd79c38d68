"""LLM answer generation from an assembled chat prompt."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from core.config import settings
from core.models import Answer, ChatPrompt, Evidence

if TYPE_CHECKING:
    from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


async def generate_answer(
    prompt: ChatPrompt,
    evidence: list[Evidence] | None = None,
    openai_client: AsyncOpenAI | None = None,
    model: str | None = None,
    temperature: float = 0.3,
) -> Answer:
    """Generate an answer for an assembled chat prompt.

    Provider errors propagate to the caller.

    Args:
        prompt: Chat prompt from ``assemble_chat_prompt`` or
            ``assemble_conversation_prompt``
        evidence: Citations to attach to the answer
        openai_client: Optional AsyncOpenAI client (will create if None)
        model: Completion model (default: settings.llm_model)
        temperature: Sampling temperature

    Returns:
        Answer with text, evidence and token usage
    """
    if openai_client is None:
        from openai import AsyncOpenAI

        openai_client = AsyncOpenAI(
            api_key=settings.openai_api_key, timeout=settings.openai_timeout
        )

    model = model or settings.llm_model
    response = await openai_client.chat.completions.create(
        model=model,
        messages=prompt.messages,
        temperature=temperature,
    )

    answer_text = response.choices[0].message.content or ""
    usage = response.usage.model_dump() if getattr(response, "usage", None) else {}
    logger.info("Generated answer (%d chars) with %s", len(answer_text), model)

    return Answer(text=answer_text, evidence=evidence or [], model=model, usage=usage)
