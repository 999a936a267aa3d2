from __future__ import annotations

import html
import re
from dataclasses import dataclass

TELEGRAM_MESSAGE_LIMIT = 4096
DEFAULT_SPLIT_LIMIT = 4000

ITEM_START = "<!-- ITEM -->"
ITEM_END = "<!-- /ITEM -->"

TAG_RE = re.compile(r"<(/?)([a-zA-Z0-9-]+)([^>]*)>")
_HREF_RE = re.compile(r"""\s*href\s*=\s*["']([^"']*)["']""", re.IGNORECASE)

ALLOWED_TAGS = frozenset({"b", "i", "u", "s", "code", "pre", "a", "blockquote", "tg-spoiler"})
_DANGEROUS_PROTOCOLS = ("javascript:", "vbscript:", "data:")
_NO_REOPEN_TAGS = frozenset({"blockquote"})

# Earlier entries win: item boundaries first, then blocks, separators, paragraphs.
_SPLIT_AFTER = (
    ITEM_END + "\n",
    "</blockquote>\n",
    "━━━━━━━━━━━━━━━━━━━━━━\n",
    "─────────────────────\n",
    "\n\n",
    "\n    ↳ ",
)
_SPLIT_BEFORE = (
    "\n🔴 ",
    "\n📌 ",
    "\n📝 ",
    "\n┌─────────────────────",
)


def utf16_len(value: str) -> int:
    return len(value.encode("utf-16-le")) // 2


def utf16_slice(value: str, max_units: int) -> str:
    units = 0
    for index, char in enumerate(value):
        char_units = 2 if ord(char) > 0xFFFF else 1
        if units + char_units > max_units:
            return value[:index]
        units += char_units
    return value


def escape(value: str) -> str:
    return html.escape(value, quote=True)


def tag_name(full_tag: str) -> str:
    inner = full_tag.strip("<>").split()
    if not inner:
        return ""
    return inner[0].lstrip("/").lower()


def strip_item_markers(text: str) -> str:
    return text.replace(ITEM_START, "").replace(ITEM_END, "")


def strip_html_tags(text: str) -> str:
    return html.unescape(TAG_RE.sub("", strip_item_markers(text)))


def _sanitize_anchor(tag: str) -> str:
    match = _HREF_RE.search(tag)
    if match is None:
        return "<a>"
    href = match.group(1)
    lowered = href.strip().lower()
    if lowered.startswith(_DANGEROUS_PROTOCOLS):
        return "<a>"
    return f'<a href="{escape(href)}">'


def sanitize_html(text: str) -> str:
    """Reduce arbitrary markup to the Telegram HTML subset.

    Unknown tags are dropped, text is escaped, dangerous hrefs are removed and
    tags left open at the end are closed.
    """
    out: list[str] = []
    stack: list[str] = []
    last = 0
    for match in TAG_RE.finditer(text):
        if match.start() > last:
            out.append(escape(text[last : match.start()]))
        last = match.end()

        name = match.group(2).lower()
        if name not in ALLOWED_TAGS:
            continue
        if match.group(1) == "/":
            if name not in stack:
                continue
            while stack:
                opened = stack.pop()
                out.append(f"</{opened}>")
                if opened == name:
                    break
            continue
        stack.append(name)
        out.append(_sanitize_anchor(match.group(0)) if name == "a" else f"<{name}>")

    if last < len(text):
        out.append(escape(text[last:]))
    for opened in reversed(stack):
        out.append(f"</{opened}>")
    return "".join(out)


@dataclass(slots=True)
class _Token:
    value: str
    is_tag: bool = False
    is_marker: bool = False


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    remaining = text
    while remaining:
        if remaining.startswith(ITEM_START):
            tokens.append(_Token(ITEM_START, is_tag=True, is_marker=True))
            remaining = remaining[len(ITEM_START) :]
            continue
        if remaining.startswith(ITEM_END):
            tokens.append(_Token(ITEM_END, is_tag=True, is_marker=True))
            remaining = remaining[len(ITEM_END) :]
            continue

        match = TAG_RE.search(remaining)
        if match is not None and match.start() == 0:
            tokens.append(_Token(match.group(0), is_tag=True))
            remaining = remaining[match.end() :]
            continue

        next_tag = match.start() if match is not None else len(remaining)
        for marker in (ITEM_START, ITEM_END):
            position = remaining.find(marker)
            if 0 <= position < next_tag:
                next_tag = position
        tokens.append(_Token(remaining[:next_tag]))
        remaining = remaining[next_tag:]
    return tokens


def _update_open_tags(tag: str, open_tags: list[str]) -> list[str]:
    for match in TAG_RE.finditer(tag):
        name = match.group(2).lower()
        if match.group(1) == "/":
            for index in range(len(open_tags) - 1, -1, -1):
                if tag_name(open_tags[index]) == name:
                    open_tags = open_tags[:index]
                    break
        else:
            open_tags = open_tags + [match.group(0)]
    return open_tags


def _find_best_split(text: str, max_units: int) -> tuple[str, str]:
    if utf16_len(text) <= max_units:
        return text, ""

    window = utf16_slice(text, max_units)
    for separator in _SPLIT_AFTER:
        position = window.rfind(separator)
        if position > 0:
            split_at = position + len(separator)
            return window[:split_at], text[split_at:]

    for separator in _SPLIT_BEFORE:
        position = window.rfind(separator)
        if position > 0:
            # Keep the newline with the current part.
            split_at = position + 1
            return window[:split_at], text[split_at:]

    for separator in ("\n", " "):
        position = window.rfind(separator)
        if position > 0:
            return window[: position + 1], text[position + 1 :]

    return window, text[len(window) :]


def split_html(text: str, limit: int = DEFAULT_SPLIT_LIMIT) -> list[str]:
    """Split Telegram HTML into parts whose visible text fits ``limit`` UTF-16 units.

    Tags open at a cut are closed at the end of the part and reopened at the
    start of the next one (blockquote is never reopened). Cuts prefer item
    boundaries, then block ends, separators and paragraph breaks. Removing tags
    and item markers from every part and concatenating gives back the visible
    text of the input.
    """
    tokens = _tokenize(text)
    total = sum(utf16_len(token.value) for token in tokens if not token.is_tag)
    if total <= limit:
        return [text]

    parts: list[str] = []
    current: list[str] = []
    open_tags: list[str] = []
    current_len = 0

    def flush() -> None:
        nonlocal current, current_len, open_tags
        content = "".join(current)
        if not content or len(content) <= sum(len(tag) for tag in open_tags):
            return
        for tag in reversed(open_tags):
            content += f"</{tag_name(tag)}>"
        parts.append(content)

        open_tags = [tag for tag in open_tags if tag_name(tag) not in _NO_REOPEN_TAGS]
        current = list(open_tags)
        current_len = 0

    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token.is_tag:
            if not token.is_marker:
                match = TAG_RE.match(token.value)
                if match is not None and match.group(1) == "/":
                    name = match.group(2).lower()
                    if name in _NO_REOPEN_TAGS and not any(
                        tag_name(tag) == name for tag in open_tags
                    ):
                        index += 1
                        continue
                open_tags = _update_open_tags(token.value, open_tags)
            current.append(token.value)

            if token.value == ITEM_END and limit // 2 < current_len < limit and index + 1 < len(tokens):
                following = tokens[index + 1]
                if not following.is_tag and following.value.startswith("\n"):
                    current.append("\n")
                    flush()
                    tokens[index + 1] = _Token(following.value[1:])
            index += 1
            continue

        remaining = token.value
        while remaining:
            can_take = limit - current_len
            if can_take <= 0:
                flush()
                can_take = limit

            remaining_len = utf16_len(remaining)
            if remaining_len <= can_take:
                current.append(remaining)
                current_len += remaining_len
                break

            to_write, remaining = _find_best_split(remaining, can_take)
            if not to_write and current_len == 0:
                to_write, remaining = remaining[:1], remaining[1:]
            if to_write:
                current.append(to_write)
                current_len += utf16_len(to_write)
            if remaining:
                flush()
        index += 1

    flush()
    return parts
