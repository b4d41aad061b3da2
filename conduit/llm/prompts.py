from typing import Optional, Sequence

from conduit.llm.types import ConversationMessage

DEFAULT_HISTORY_WINDOW = 10

SYSTEM_PROMPT = "You are a helpful assistant. Answer questions based on provided webpage content."

CONTEXT_SYSTEM_PROMPT = "You are a helpful assistant. Answer questions based on the provided webpage content:\n\n{context}"

SUMMARY_PROMPT = (
    "Summarize the following conversation in 2-3 sentences, focusing on the main topics and outcomes:\n\n"
    "{conversation}\n\n"
    "Summary:"
)

TLDR_PROMPT = (
    "Summarize this webpage in 3 bullet points:\n\n"
    "Title: {title}\n"
    "Content: {content}\n\n"
    "Format:\n"
    "• point 1\n"
    "• point 2\n"
    "• point 3"
)

# Rough token estimation: 1 token ~ 4 chars
CHARS_PER_TOKEN = 4.0


def estimate_tokens(text: str, chars_per_token: float = CHARS_PER_TOKEN) -> int:
    return int(round(len(text) / chars_per_token))


def recent_history(history: Sequence[ConversationMessage], window: int = DEFAULT_HISTORY_WINDOW) -> list[ConversationMessage]:
    # Empty assistant placeholders (streaming in flight or failed) are not sent
    usable = [m for m in history if m.content]
    return usable[-window:] if window > 0 else []


def system_prompt(context: Optional[str]) -> str:
    if context:
        return CONTEXT_SYSTEM_PROMPT.format(context=context)
    return SYSTEM_PROMPT


def build_chat_messages(
    query: str,
    context: Optional[str],
    history: Sequence[ConversationMessage],
    window: int = DEFAULT_HISTORY_WINDOW,
    include_system: bool = True,
) -> list[dict]:
    """Role/content message list shared by the OpenAI-style and Ollama chat APIs."""
    messages = []
    if include_system:
        messages.append({"role": "system", "content": system_prompt(context)})
    for message in recent_history(history, window):
        messages.append({"role": message.role.value, "content": message.content})
    messages.append({"role": "user", "content": query})
    return messages


def summary_prompt(messages: Sequence[ConversationMessage]) -> str:
    conversation = "\n".join(f"{m.role.value.capitalize()}: {m.content}" for m in messages)
    return SUMMARY_PROMPT.format(conversation=conversation)


def tldr_prompt(title: str, content: str, max_chars: int = 2000) -> str:
    return TLDR_PROMPT.format(title=title, content=content[:max_chars])
