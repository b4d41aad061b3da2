from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

MAX_CONTEXT_CHARS = 8000


class PageContext(BaseModel):
    title: str = ""
    url: str = ""
    text: str = ""


ContextProvider = Callable[[], Awaitable[Optional[PageContext]]]


async def no_context() -> Optional[PageContext]:
    return None


def format_context(page: Optional[PageContext], max_chars: int = MAX_CONTEXT_CHARS) -> Optional[str]:
    """Render a page as the text block sent alongside a query, or None if empty."""
    if page is None or not page.text.strip():
        return None
    text = page.text.strip()
    if len(text) > max_chars:
        text = text[:max_chars].rstrip() + "\n[truncated]"
    header = []
    if page.title:
        header.append(f"Title: {page.title}")
    if page.url:
        header.append(f"URL: {page.url}")
    if header:
        return "\n".join(header) + "\n\n" + text
    return text
