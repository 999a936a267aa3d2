from __future__ import annotations

import re

from tgdigest.htmlutils import (
    ITEM_END,
    ITEM_START,
    sanitize_html,
    split_html,
    strip_html_tags,
    utf16_len,
)


def _visible(parts: list[str]) -> str:
    return "".join(strip_html_tags(part) for part in parts)


def test_split_html_short_text_is_single_part() -> None:
    text = "<b>Digest</b>\nshort"
    assert split_html(text, limit=100) == [text]


def test_split_html_keeps_visible_text_and_limit() -> None:
    items = [f"{ITEM_START}• item number {index} <a href=\"https://t.me/x/{index}\">src</a>{ITEM_END}" for index in range(40)]
    text = "<b>Header</b>\n" + "\n".join(items)

    parts = split_html(text, limit=300)

    assert len(parts) > 1
    assert _visible(parts) == strip_html_tags(text)
    for part in parts:
        assert utf16_len(strip_html_tags(part)) <= 300


def test_split_html_prefers_item_boundaries() -> None:
    items = [f"{ITEM_START}• {'word ' * 10}{index}{ITEM_END}" for index in range(20)]
    text = "\n".join(items)

    parts = split_html(text, limit=200)

    for part in parts[:-1]:
        assert part.rstrip("\n").endswith(ITEM_END)


def test_split_html_reopens_tags_across_parts() -> None:
    text = "<b>" + ("bold text " * 60) + "</b>"

    parts = split_html(text, limit=200)

    assert len(parts) > 1
    for part in parts:
        assert part.count("<b>") == part.count("</b>")
    assert _visible(parts) == strip_html_tags(text)


def test_split_html_does_not_reopen_blockquote() -> None:
    text = "<blockquote>" + ("quoted line\n" * 40) + "</blockquote>\ntail"

    parts = split_html(text, limit=150)

    assert len(parts) > 1
    assert parts[0].startswith("<blockquote>")
    assert not any(part.startswith("<blockquote>") for part in parts[1:])


def test_split_html_counts_utf16_units() -> None:
    text = "😀" * 150

    parts = split_html(text, limit=100)

    assert all(utf16_len(part) <= 100 for part in parts)
    assert "".join(parts) == text


def test_sanitize_html_drops_unknown_tags_and_bad_links() -> None:
    raw = '<div><b>ok</b> <a href="javascript:alert(1)">x</a> <script>1 < 2</script><i>open'

    cleaned = sanitize_html(raw)

    assert "<div>" not in cleaned
    assert "<script>" not in cleaned
    assert "javascript" not in cleaned
    assert cleaned.startswith("<b>ok</b>")
    assert cleaned.endswith("</i>")
    assert re.search(r"1 &lt; 2", cleaned)


def test_sanitize_html_keeps_safe_anchor() -> None:
    cleaned = sanitize_html('<a href="https://example.com/?a=1&b=2">site</a>')
    assert cleaned == '<a href="https://example.com/?a=1&amp;b=2">site</a>'
