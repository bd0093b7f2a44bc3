"""消息渲染：Markdown → HTML，以及基于事件流的增量渲染。"""

from exgpt_core.render.incremental import IncrementalRenderer, tool_notice
from exgpt_core.render.markdown import RenderOptions, is_valid_html_document, render_markdown

__all__ = [
    "IncrementalRenderer",
    "RenderOptions",
    "is_valid_html_document",
    "render_markdown",
    "tool_notice",
]
