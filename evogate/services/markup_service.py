"""Markup translation between WhatsApp markup and helpdesk markdown.

WhatsApp: ``*bold*``, ``_italic_``, ``~strike~``, ```` ```mono``` ````.
Helpdesk: ``**bold**``, ``*italic*``, ``~~strike~~``, `` `code` ``.

Each direction is an ordered list of substitutions. The order is part of the
contract: in the helpdesk direction bold runs before italic (italic emits
single asterisks the bold rule would pick up again); in the transport
direction italic runs before bold (bold emits single asterisks) and inline
code runs last. Code spans are cut out before the emphasis rules run, so
nothing inside them is rewritten.

Spans never start or end with whitespace and never cross a newline.
"""

import re
from typing import Optional

from evogate.errors import MarkupTranslationError
from evogate.logging_config import get_logger

logger = get_logger("markup_service")

# transport -> helpdesk
_WA_BOLD = re.compile(r"(?<!\*)\*((?!\s)[^\n*]+?(?<!\s))\*(?!\*)")
_WA_ITALIC = re.compile(r"(?<!\w)_((?!\s)[^\n_]+?(?<!\s))_(?!\w)")
_WA_STRIKE = re.compile(r"(?<!~)~((?!\s)[^\n~]+?(?<!\s))~(?!~)")
_WA_MONO = re.compile(r"(?<!`)```((?!\s)[^\n`]+?(?<!\s))```(?!`)")
_WA_CODE_SPAN = re.compile(r"```[\s\S]*?```")

TO_HELPDESK_RULES = (
    (_WA_BOLD, r"**\1**"),
    (_WA_ITALIC, r"*\1*"),
    (_WA_STRIKE, r"~~\1~~"),
)

# helpdesk -> transport
_MD_ITALIC = re.compile(r"(?<!\*)\*((?!\s)[^\n*]+?(?<!\s))\*(?!\*)")
_MD_BOLD = re.compile(r"(?<!\*)\*\*((?!\s)[^\n*]+?(?<!\s))\*\*(?!\*)")
_MD_STRIKE = re.compile(r"(?<!~)~~((?!\s)[^\n~]+?(?<!\s))~~(?!~)")
_MD_INLINE_CODE = re.compile(r"(?<!`)`((?!\s)[^\n`]+?(?<!\s))`(?!`)")
_MD_CODE_SPAN = re.compile(r"```[\s\S]*?```|(?<!`)`[^`\n]+`(?!`)")

TO_TRANSPORT_RULES = (
    (_MD_ITALIC, r"_\1_"),
    (_MD_BOLD, r"*\1*"),
    (_MD_STRIKE, r"~\1~"),
)


def _apply(rules, text: str) -> str:
    for pattern, replacement in rules:
        text = pattern.sub(replacement, text)
    return text


def _translate(text: Optional[str], rules, code_span: re.Pattern, code_rule) -> Optional[str]:
    if text is None or text == "":
        return text
    if not isinstance(text, str):
        raise MarkupTranslationError(f"Cannot translate markup of {type(text).__name__}")

    try:
        parts = []
        position = 0
        for match in code_span.finditer(text):
            parts.append(_apply(rules, text[position : match.start()]))
            pattern, replacement = code_rule
            parts.append(pattern.sub(replacement, match.group(0)))
            position = match.end()
        parts.append(_apply(rules, text[position:]))
        return "".join(parts)
    except (re.error, TypeError, IndexError) as exc:
        raise MarkupTranslationError(f"Markup substitution failed: {exc}") from exc


def to_helpdesk_markup(text: Optional[str]) -> Optional[str]:
    """WhatsApp markup -> helpdesk markdown. Use only for transport-originated text."""
    return _translate(text, TO_HELPDESK_RULES, _WA_CODE_SPAN, (_WA_MONO, r"`\1`"))


def to_transport_markup(text: Optional[str]) -> Optional[str]:
    """Helpdesk markdown -> WhatsApp markup. Use only for helpdesk-originated text."""
    return _translate(text, TO_TRANSPORT_RULES, _MD_CODE_SPAN, (_MD_INLINE_CODE, r"```\1```"))


def safe_to_helpdesk_markup(text):
    try:
        return to_helpdesk_markup(text)
    except MarkupTranslationError as exc:
        logger.warning(
            "Markup translation failed, sending original text",
            extra={"context": {"direction": "helpdesk", "error": str(exc)}},
        )
        return text


def safe_to_transport_markup(text):
    try:
        return to_transport_markup(text)
    except MarkupTranslationError as exc:
        logger.warning(
            "Markup translation failed, sending original text",
            extra={"context": {"direction": "transport", "error": str(exc)}},
        )
        return text
