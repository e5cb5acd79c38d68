"""Prompt assembly: system instructions, retrieved context and user input.

Pure string/structure transforms; nothing here performs retrieval or
network calls.
"""

from __future__ import annotations

from core.errors import ConfigurationError
from core.models import ChatPrompt, ChatTurn, ContextBlock, PromptBundle
from retrieval.context_builder import format_context_blocks

DEFAULT_SYSTEM_TEMPLATE = """You are a helpful AI assistant for an e-commerce store. Your role is to answer customer questions about products, policies, and store information.

Guidelines:
- Answer only from the store context provided to you
- If the context does not contain the answer, say you don't have that information; never invent prices, stock levels, features or policy terms
- Be friendly and professional
- When mentioning products, include relevant details like price, availability, and features when the context gives them
- For policy questions (shipping, returns, etc.), refer to the specific policy information provided
- Cite your sources by their [Source n] label when you use them"""

CONTEXT_PREFIX = "Context:"
USER_MESSAGE_PREFIX = "User Question:"


def _require_template(system_template: str | None) -> None:
    if not system_template or not system_template.strip():
        raise ConfigurationError("system_template is required")


def _require(system_template: str | None, user_message: str | None) -> None:
    _require_template(system_template)
    if not user_message or not user_message.strip():
        raise ConfigurationError("user_message is required")


def _context_text(blocks: list[ContextBlock]) -> str:
    if not blocks:
        return ""
    return f"{CONTEXT_PREFIX}\n{format_context_blocks(blocks)}"


def assemble_prompt(
    user_message: str,
    context_blocks: list[ContextBlock] | None = None,
    system_template: str = DEFAULT_SYSTEM_TEMPLATE,
) -> PromptBundle:
    """Single-shot prompt: template, context and question in one string.

    With no context blocks the prompt holds only the template and the
    user message.
    """
    _require(system_template, user_message)
    context = _context_text(context_blocks or [])

    system_prompt = system_template.strip()
    if context:
        system_prompt = f"{system_prompt}\n\n{context}"
    user_prompt = f"{USER_MESSAGE_PREFIX}\n{user_message.strip()}"

    return PromptBundle(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        full_prompt=f"{system_prompt}\n\n{user_prompt}",
    )


def assemble_chat_prompt(
    user_message: str,
    context_blocks: list[ContextBlock] | None = None,
    system_template: str = DEFAULT_SYSTEM_TEMPLATE,
) -> ChatPrompt:
    """Chat messages: system instructions, a separate context message, the user turn."""
    return assemble_conversation_prompt(user_message, [], context_blocks, system_template)


def normalize_history(history: list[ChatTurn] | list[dict] | None) -> list[ChatTurn]:
    """Coerce prior turns to ``ChatTurn``; only user/assistant roles are allowed."""
    turns = []
    for turn in history or []:
        if isinstance(turn, dict):
            role = turn.get("role")
            if role not in ("user", "assistant"):
                raise ConfigurationError(f"Unsupported history role: {role!r}")
            turn = ChatTurn(role=role, content=turn.get("content", ""))
        turns.append(turn)
    return turns


def check_prompt_inputs(
    system_template: str | None,
    history: list[ChatTurn] | list[dict] | None = None,
) -> None:
    """Reject a blank template or a bad history turn before any retrieval runs."""
    _require_template(system_template)
    normalize_history(history)


def assemble_conversation_prompt(
    user_message: str,
    history: list[ChatTurn] | list[dict] | None = None,
    context_blocks: list[ContextBlock] | None = None,
    system_template: str = DEFAULT_SYSTEM_TEMPLATE,
) -> ChatPrompt:
    """Multi-turn chat messages.

    Order: system instructions, context (when any), prior turns oldest to
    newest, then the new user message.

    Raises:
        ConfigurationError: missing template or user message, or a history
            turn that is not a user/assistant message
    """
    _require(system_template, user_message)
    turns = normalize_history(history)

    system_message = system_template.strip()
    messages = [{"role": "system", "content": system_message}]

    context = _context_text(context_blocks or [])
    if context:
        messages.append({"role": "system", "content": context})

    messages.extend({"role": t.role, "content": t.content} for t in turns)
    messages.append({"role": "user", "content": user_message.strip()})

    return ChatPrompt(system_message=system_message, messages=messages)
