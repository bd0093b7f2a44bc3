"""GitHub-flavored Markdown to HTML for chat messages.

Every call re-parses the whole accumulated text, so a message that is still
streaming is rendered the same way as a finished one, with one exception
that only applies while ``streaming=True``: an unclosed live-preview block
becomes a "working" placeholder.

Rules run in a fixed order. Output of an earlier rule is stashed behind a
``\\x00<n>\\x00`` token so that later rules (bold, italic, autolinks, ...)
never rewrite it; tokens are expanded once all rules have run.
"""

import html
import re
from dataclasses import dataclass
from typing import Iterable, List

from exgpt_core.render.highlight import highlighted_code_block, plain_code_block

LIVE_ERROR = "Live HTML was not a properly formatted HTML document."
LIVE_LOADING = "Claude is working on live code"

_TOKEN_RE = re.compile("\x00(\\d+)\x00")

_LIVE_BLOCK_RE = re.compile(r"```live\n([\s\S]*?)```")
_LIVE_OPEN_RE = re.compile(r"```live(?:\n[\s\S]*)?$")
_FENCE_RE = re.compile(r"```([\w+#.-]*)[ \t]*\n([\s\S]*?)```")
_OPEN_FENCE_RE = re.compile(r"^```[\w+#.-]*[ \t]*(?:\n[\s\S]*)?$", re.MULTILINE)
_INLINE_CODE_RE = re.compile(r"`([^`\n]+)`")
_TABLE_ROW_RE = re.compile(r"^\|(.+)\|[ \t]*$")
_TABLE_SEP_RE = re.compile(r"^\|([ \t\-:|]+)\|[ \t]*$")
_STRIKE_RE = re.compile(r"~~([^~\n]+)~~")
_BOLD_STAR_RE = re.compile(r"\*\*([^*\n]+)\*\*")
_BOLD_UNDER_RE = re.compile(r"(?<!\w)__([^_\n]+)__(?!\w)")
_ITALIC_STAR_RE = re.compile(r"\*(?![\s*])([^*\n]+?)(?<!\s)\*")
_ITALIC_UNDER_RE = re.compile(r"(?<!\w)_(?![\s_])([^_\n]+?)_(?!\w)")
_HEADING_RE = re.compile(r"^(#{1,6}) (.+)$", re.MULTILINE)
_TASK_RE = re.compile(r"^- \[([ xX])\] (.+)$")
_BULLET_RE = re.compile(r"^[*-] (.+)$")
_ORDERED_RE = re.compile(r"^\d+\. (.+)$")
_QUOTE_RE = re.compile(r"^&gt; ?(.+)$", re.MULTILINE)
_HR_RE = re.compile(r"^(?:---|\*\*\*|___)[ \t]*$", re.MULTILINE)
_LINK_RE = re.compile(r"\[([^\]\n]+)\]\(([^)\s]+)\)")
_URL_RE = re.compile("https?://[^\\s<\x00]*[^\\s<\x00.,;:!?)\\]]")

_BLOCK_OPEN = r"(<(?:h[1-6]|pre|ul|ol|table|blockquote|div)\b[^>]*>|<hr>)"
_BLOCK_CLOSE = r"(</(?:h[1-6]|pre|ul|ol|table|blockquote|div)>|<hr>)"
_SAFE_HREF_RE = re.compile(r"^(?:https?:|mailto:|#|/)", re.IGNORECASE)


@dataclass(frozen=True)
class RenderOptions:
    markdown: bool = True
    live_html: bool = False
    syntax_highlight: bool = False
    frame_prefix: str = "live-frame"

    @classmethod
    def from_toggles(cls, enabled: Iterable[str], frame_prefix: str = "live-frame") -> "RenderOptions":
        names = set(enabled)
        markdown = "markdown" in names
        return cls(
            markdown=markdown,
            live_html=markdown and "livehtml" in names,
            syntax_highlight=markdown and "syntaxhighlight" in names,
            frame_prefix=frame_prefix,
        )


class _Stash:
    def __init__(self) -> None:
        self._items: List[str] = []

    def put(self, fragment: str) -> str:
        self._items.append(fragment)
        return f"\x00{len(self._items) - 1}\x00"

    def expand(self, text: str) -> str:
        return _TOKEN_RE.sub(lambda m: self.expand(self._items[int(m.group(1))]), text)


def escape_html(text: str) -> str:
    return html.escape(text, quote=False)


def escape_attribute(text: str) -> str:
    return html.escape(text, quote=True)


def is_valid_html_document(document: str) -> bool:
    trimmed = document.strip()
    return (
        trimmed.startswith("<!DOCTYPE html>")
        and "<html" in trimmed
        and "<head" in trimmed
        and "<body" in trimmed
        and "</html>" in trimmed
    )


def live_frame(document: str, frame_id: str) -> str:
    if not is_valid_html_document(document):
        return (
            '<div class="live-html-error"><i class="ph ph-file-x"></i>'
            f"<span>{LIVE_ERROR}</span></div>"
        )
    return (
        f'<div class="live-html-container" data-frame-id="{frame_id}">'
        '<div class="live-html-header"><span><i class="ph ph-code"></i> Live HTML Preview</span></div>'
        f'<iframe id="{frame_id}" class="live-html-frame" sandbox="allow-scripts" '
        f'srcdoc="{escape_attribute(document.strip())}"></iframe></div>'
    )


def live_loading() -> str:
    return (
        '<div class="live-html-loading"><i class="ph ph-spinner-gap spinning"></i>'
        f"<span>{LIVE_LOADING}</span></div>"
    )


def _code_block(code: str, lang: str, options: RenderOptions) -> str:
    if options.syntax_highlight:
        return highlighted_code_block(code, lang)
    return plain_code_block(code, lang)


def _trim_code(code: str) -> str:
    return code.strip("\n").rstrip()


def _literal(text: str) -> str:
    return escape_html(text).replace("\n", "<br>")


def _render_tables(text: str) -> str:
    lines = text.split("\n")
    out: List[str] = []
    i = 0
    while i < len(lines):
        header = _TABLE_ROW_RE.match(lines[i])
        sep = _TABLE_SEP_RE.match(lines[i + 1]) if header and i + 1 < len(lines) else None
        if not header or not sep:
            out.append(lines[i])
            i += 1
            continue
        headers = [h.strip() for h in header.group(1).split("|") if h.strip()]
        alignments = []
        for cell in sep.group(1).split("|")[: len(headers)]:
            cell = cell.strip()
            if cell.startswith(":") and cell.endswith(":") and len(cell) > 1:
                alignments.append("center")
            elif cell.endswith(":"):
                alignments.append("right")
            else:
                alignments.append("left")

        def _align(idx: int) -> str:
            return alignments[idx] if idx < len(alignments) else "left"

        parts = ["<table><thead><tr>"]
        parts.extend(f'<th style="text-align:{_align(n)}">{h}</th>' for n, h in enumerate(headers))
        parts.append("</tr></thead><tbody>")
        i += 2
        while i < len(lines):
            row = _TABLE_ROW_RE.match(lines[i])
            if not row:
                break
            cells = [c.strip() for c in row.group(1).split("|")]
            parts.append("<tr>")
            parts.extend(f'<td style="text-align:{_align(n)}">{c}</td>' for n, c in enumerate(cells))
            parts.append("</tr>")
            i += 1
        parts.append("</tbody></table>")
        out.append("".join(parts))
    return "\n".join(out)


def _render_lists(text: str) -> str:
    """Consecutive list lines of one kind become a single list element."""

    out: List[str] = []
    kind = None
    items: List[str] = []

    def _flush() -> None:
        if not items:
            return
        if kind == "task":
            out.append('<ul class="task-list">' + "".join(items) + "</ul>")
        elif kind == "ol":
            out.append("<ol>" + "".join(items) + "</ol>")
        else:
            out.append("<ul>" + "".join(items) + "</ul>")
        items.clear()

    for line in text.split("\n"):
        task = _TASK_RE.match(line)
        bullet = None if task else _BULLET_RE.match(line)
        ordered = None if task or bullet else _ORDERED_RE.match(line)
        if task:
            line_kind = "task"
            if task.group(1).lower() == "x":
                item = f'<li class="task-item checked"><input type="checkbox" checked disabled> {task.group(2)}</li>'
            else:
                item = f'<li class="task-item"><input type="checkbox" disabled> {task.group(2)}</li>'
        elif bullet:
            line_kind, item = "ul", f"<li>{bullet.group(1)}</li>"
        elif ordered:
            line_kind, item = "ol", f"<li>{ordered.group(1)}</li>"
        else:
            _flush()
            kind = None
            out.append(line)
            continue
        if line_kind != kind:
            _flush()
            kind = line_kind
        items.append(item)
    _flush()
    return "\n".join(out)


def _cleanup(markup: str) -> str:
    markup = re.sub(_BLOCK_CLOSE + "<br>" + _BLOCK_OPEN, r"\1\2", markup)
    markup = re.sub(_BLOCK_CLOSE + "<br>", r"\1<p>", markup)
    markup = re.sub("<br>" + _BLOCK_OPEN, r"</p>\1", markup)
    markup = re.sub("<p>" + _BLOCK_OPEN, r"\1", markup)
    markup = re.sub(_BLOCK_CLOSE + "</p>", r"\1", markup)
    markup = markup.replace("<p><br>", "<p>").replace("<br></p>", "</p>")
    return markup.replace("<p></p>", "")


def render_markdown(text: str, options: RenderOptions = RenderOptions(), streaming: bool = False) -> str:
    """Render ``text`` to HTML.

    With ``options.markdown`` off the text is only escaped.
    """

    if not text:
        return ""
    text = text.replace("\x00", "")
    if not options.markdown:
        return escape_html(text)

    stash = _Stash()
    frame_counter = 0

    if options.live_html:

        def _live(match: "re.Match[str]") -> str:
            nonlocal frame_counter
            frame_id = f"{options.frame_prefix}-{frame_counter}"
            frame_counter += 1
            return stash.put(live_frame(match.group(1), frame_id))

        text = _LIVE_BLOCK_RE.sub(_live, text)
        if streaming:
            text = _LIVE_OPEN_RE.sub(lambda m: stash.put(live_loading()), text, count=1)

    text = _FENCE_RE.sub(
        lambda m: stash.put(_code_block(_trim_code(m.group(2)), m.group(1), options)),
        text,
    )
    # an opening fence with no closing fence is not a block yet: keep it as literal text
    text = _OPEN_FENCE_RE.sub(lambda m: stash.put(_literal(m.group(0))), text, count=1)

    text = escape_html(text)
    text = _INLINE_CODE_RE.sub(lambda m: stash.put(f"<code>{m.group(1)}</code>"), text)
    text = _render_tables(text)
    text = _STRIKE_RE.sub(r"<del>\1</del>", text)
    text = _BOLD_STAR_RE.sub(r"<strong>\1</strong>", text)
    text = _BOLD_UNDER_RE.sub(r"<strong>\1</strong>", text)
    text = _ITALIC_STAR_RE.sub(r"<em>\1</em>", text)
    text = _ITALIC_UNDER_RE.sub(r"<em>\1</em>", text)
    text = _HEADING_RE.sub(lambda m: f"<h{len(m.group(1))}>{m.group(2)}</h{len(m.group(1))}>", text)
    text = _render_lists(text)
    text = _QUOTE_RE.sub(r"<blockquote>\1</blockquote>", text)
    text = text.replace("</blockquote>\n<blockquote>", "<br>")
    text = _HR_RE.sub("<hr>", text)

    def _link(match: "re.Match[str]") -> str:
        label, href = match.group(1), match.group(2)
        if not _SAFE_HREF_RE.match(href):
            return label
        href = href.replace('"', "&quot;")
        return stash.put(f'<a href="{href}" target="_blank" rel="noopener">{label}</a>')

    text = _LINK_RE.sub(_link, text)
    text = _URL_RE.sub(
        lambda m: stash.put(f'<a href="{m.group(0)}" target="_blank" rel="noopener">{m.group(0)}</a>'),
        text,
    )

    text = re.sub(r"\n{2,}", "</p><p>", text)
    text = text.replace("\n", "<br>")
    return _cleanup(stash.expand(f"<p>{text}</p>"))
