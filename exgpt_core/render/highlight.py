"""Fenced code block rendering with Pygments.

Lookup order: the fence's language hint, then ``guess_lexer`` on the code,
then plain escaped text.
"""

import html
from functools import lru_cache
from typing import Optional

from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexer import Lexer
from pygments.lexers import get_lexer_by_name, guess_lexer
from pygments.util import ClassNotFound


@lru_cache(maxsize=64)
def _lexer_by_name(lang: str) -> Optional[Lexer]:
    try:
        return get_lexer_by_name(lang)
    except ClassNotFound:
        return None


@lru_cache(maxsize=1)
def _get_formatter() -> HtmlFormatter:
    return HtmlFormatter(nowrap=True)


def plain_code_block(code: str, lang: str = "") -> str:
    return f'<pre><code class="language-{lang}">{html.escape(code, quote=False)}</code></pre>'


def highlighted_code_block(code: str, lang: str = "") -> str:
    """Render ``code`` as a highlighted ``<pre><code>`` block."""

    lexer = _lexer_by_name(lang.lower()) if lang else None
    if lexer is not None:
        body = highlight(code, lexer, _get_formatter()).rstrip("\n")
        return f'<pre><code class="hljs language-{lang}">{body}</code></pre>'
    try:
        guessed = guess_lexer(code)
    except ClassNotFound:
        return plain_code_block(code, lang)
    body = highlight(code, guessed, _get_formatter()).rstrip("\n")
    return f'<pre><code class="hljs">{body}</code></pre>'
