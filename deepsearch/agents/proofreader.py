"""Final report cleanup: deterministic markdown fixes plus an optional copy-edit pass."""
from __future__ import annotations

import re

from deepsearch import llm_client
from deepsearch.config import settings
from deepsearch.errors import UpstreamProviderError
from deepsearch.services.logger import logger
from deepsearch.services.prompt_store import render_prompt

PROOFREAD_TEMPERATURE = 0.3
MIN_LENGTH_RATIO = 0.95

_ADJACENT_CITATIONS = re.compile(r"\[(\d+(?:,\s*\d+)*)\]\s*\[(\d+(?:,\s*\d+)*)\]")
_GIBBERISH = re.compile(r"\[[A-Za-z0-9_-]{20,}\]")
_MARKDOWN_LINK = re.compile(r"\[([^\]]+)\]\(https?://[^)]+\)")
_RAW_URL = re.compile(r"(?<![(\[])(https?://[^\s<>\])\"]+)(?![)\]])")
_SINGLE_STAR = re.compile(r"(?<!\*)\*(?!\*)")
_HEADER_NO_SPACE = re.compile(r"^(#{1,6})([^#\s])", re.MULTILINE)
_HEADER_NO_BLANK = re.compile(r"([^\n])\n(#{1,6}\s)")
_MANY_BLANKS = re.compile(r"\n{3,}")
_NUMBERED_ITEM = re.compile(r"^\d+\.\s")


def _fix_italics(line: str) -> str:
    stripped = line.strip()
    if stripped.startswith(("- ", "* ")) or _NUMBERED_ITEM.match(stripped):
        return line
    if len(_SINGLE_STAR.findall(line)) % 2 == 0:
        return line
    last = line.rfind("*")
    before = line[last - 1] if last > 0 else ""
    after = line[last + 1] if last + 1 < len(line) else ""
    if last != -1 and before != "*" and after != "*":
        return line[:last] + line[last + 1:]
    return line


def quick_cleanup(text: str) -> str:
    """Normalize citations and repair markdown the model commonly breaks."""
    cleaned, merged = _ADJACENT_CITATIONS.subn(r"[\1, \2]", text)
    while merged:
        cleaned, merged = _ADJACENT_CITATIONS.subn(r"[\1, \2]", cleaned)
    cleaned = _GIBBERISH.sub("", cleaned)
    cleaned = _MARKDOWN_LINK.sub(r"\1", cleaned)
    cleaned = _RAW_URL.sub("", cleaned)

    if cleaned.count("**") % 2:
        last = cleaned.rfind("**")
        cleaned = cleaned[:last] + cleaned[last + 2:]

    cleaned = "\n".join(_fix_italics(line) for line in cleaned.split("\n"))
    cleaned = _HEADER_NO_SPACE.sub(r"\1 \2", cleaned)
    cleaned = _HEADER_NO_BLANK.sub(r"\1\n\n\2", cleaned)
    cleaned = _MANY_BLANKS.sub("\n\n", cleaned)
    cleaned = "\n".join(line.rstrip() for line in cleaned.split("\n"))
    return cleaned.strip()


async def proofread(text: str, *, provider: str | None = None, use_llm: bool | None = None) -> str:
    """Quick cleanup, then a copy-edit call when enabled.

    The copy-edited text is discarded if it comes back materially shorter, since the
    editor is only allowed to fix typos.
    """
    cleaned = quick_cleanup(text)
    if not cleaned:
        return cleaned
    if use_llm is None:
        use_llm = settings.proofread_with_llm
    if not use_llm:
        return cleaned

    messages = [
        {"role": "system", "content": render_prompt("proofreader.system")},
        {"role": "user", "content": f"Please proofread and polish the following research document:\n\n{cleaned}"},
    ]
    try:
        response = await llm_client.complete_text(
            messages, PROOFREAD_TEMPERATURE, provider=provider, caller="proofreader"
        )
    except UpstreamProviderError as e:
        logger.warning(f"Proofread call failed, keeping cleaned draft: {e}")
        return cleaned

    edited = quick_cleanup(response.content)
    if len(edited) < len(cleaned) * MIN_LENGTH_RATIO:
        logger.warning(
            f"Proofread output too short ({len(edited)} < {MIN_LENGTH_RATIO:.0%} of {len(cleaned)}), keeping original"
        )
        return cleaned
    return edited
