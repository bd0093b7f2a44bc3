from exgpt_core.render.markdown import (
    LIVE_ERROR,
    LIVE_LOADING,
    RenderOptions,
    is_valid_html_document,
    render_markdown,
)

DOC = "<!DOCTYPE html><html><head><title>t</title></head><body><p>hi</p></body></html>"
LIVE = RenderOptions(live_html=True)


def test_empty_text_renders_nothing():
    assert render_markdown("") == ""


def test_inline_formatting():
    out = render_markdown("**bold**, *it*, ~~gone~~ and `x < y`")
    assert out == (
        "<p><strong>bold</strong>, <em>it</em>, <del>gone</del> and <code>x &lt; y</code></p>"
    )


def test_underscores_inside_words_stay_literal():
    assert render_markdown("snake_case_name") == "<p>snake_case_name</p>"


def test_raw_html_is_escaped():
    assert render_markdown("<script>alert(1)</script>") == "<p>&lt;script&gt;alert(1)&lt;/script&gt;</p>"


def test_plain_mode_only_escapes():
    assert render_markdown("**x** <b>", RenderOptions(markdown=False)) == "**x** &lt;b&gt;"


def test_headings_and_paragraphs():
    assert render_markdown("# Title\n\nBody\nline") == "<h1>Title</h1><p>Body<br>line</p>"


def test_fenced_code_is_not_formatted():
    out = render_markdown("```python\nx = **y** < 2\n```")
    assert out == '<pre><code class="language-python">x = **y** &lt; 2</code></pre>'


def test_syntax_highlighting_uses_language_hint():
    out = render_markdown("```python\ndef f():\n    pass\n```", RenderOptions(syntax_highlight=True))
    assert out.startswith('<pre><code class="hljs language-python">')
    assert '<span class="k">def</span>' in out


def test_unterminated_fence_stays_literal():
    text = "Intro\n```python\nx = 1 < 2\n\n**not bold**"
    out = render_markdown(text, streaming=True)
    assert out == "<p>Intro<br>```python<br>x = 1 &lt; 2<br><br>**not bold**</p>"
    assert "<pre" not in out
    assert render_markdown(text, streaming=False) == out


def test_closing_the_fence_turns_literal_into_code_block():
    opened = render_markdown("```js\nlet a = 1;")
    closed = render_markdown("```js\nlet a = 1;\n```\n\n**after**")
    assert opened == "<p>```js<br>let a = 1;</p>"
    assert closed == '<pre><code class="language-js">let a = 1;</code></pre><p><strong>after</strong></p>'


def test_table_with_alignment():
    out = render_markdown("| a | b |\n|:--|--:|\n| 1 | 2 |")
    assert out.startswith("<table><thead><tr>")
    assert '<th style="text-align:left">a</th>' in out
    assert '<td style="text-align:right">2</td>' in out
    assert out.endswith("</tbody></table>")


def test_lists():
    out = render_markdown("- a\n- b\n\n1. one\n2. two")
    assert out == "<ul><li>a</li><li>b</li></ul><ol><li>one</li><li>two</li></ol>"


def test_task_list():
    out = render_markdown("- [x] done\n- [ ] todo")
    assert out.startswith('<ul class="task-list">')
    assert '<input type="checkbox" checked disabled> done' in out
    assert '<input type="checkbox" disabled> todo' in out


def test_blockquote_and_rule():
    assert render_markdown("> quoted") == "<blockquote>quoted</blockquote>"
    assert "<hr>" in render_markdown("above\n\n---\n\nbelow")


def test_links_and_autolinks():
    out = render_markdown("[docs](https://x.io/a?b=1&c=2) or see https://example.com.")
    assert '<a href="https://x.io/a?b=1&amp;c=2" target="_blank" rel="noopener">docs</a>' in out
    assert '<a href="https://example.com" target="_blank" rel="noopener">https://example.com</a>.' in out


def test_unsafe_link_keeps_only_label():
    out = render_markdown("[click](javascript:alert(1))")
    assert "<a" not in out
    assert "javascript" not in out
    assert "click" in out


def test_live_frame_for_valid_document():
    out = render_markdown(f"Look:\n```live\n{DOC}\n```", LIVE)
    assert 'id="live-frame-0"' in out
    assert 'sandbox="allow-scripts"' in out
    assert 'srcdoc="&lt;!DOCTYPE html&gt;' in out
    assert "<p>hi</p>" not in out


def test_live_frames_get_sequential_ids():
    text = f"```live\n{DOC}\n```\n\n```live\n{DOC}\n```"
    out = render_markdown(text, RenderOptions(live_html=True, frame_prefix="msg-3"))
    assert 'id="msg-3-0"' in out
    assert 'id="msg-3-1"' in out
    assert render_markdown(text, RenderOptions(live_html=True, frame_prefix="msg-3")) == out


def test_invalid_live_document_shows_error():
    out = render_markdown("```live\n<div>not a document</div>\n```", LIVE)
    assert LIVE_ERROR in out
    assert "<iframe" not in out


def test_unclosed_live_block_while_streaming():
    text = "Building it:\n```live\n<!DOCTYPE html><html><head>"
    streaming = render_markdown(text, LIVE, streaming=True)
    assert LIVE_LOADING in streaming
    assert "<iframe" not in streaming
    final = render_markdown(text, LIVE, streaming=False)
    assert LIVE_LOADING not in final
    assert "<iframe" not in final
    assert "```live<br>&lt;!DOCTYPE html&gt;" in final


def test_live_blocks_are_code_without_toggle():
    out = render_markdown(f"```live\n{DOC}\n```")
    assert "<iframe" not in out
    assert '<code class="language-live">' in out


def test_options_from_toggles():
    options = RenderOptions.from_toggles(["livehtml", "syntaxhighlight"])
    assert not options.markdown and not options.live_html and not options.syntax_highlight
    options = RenderOptions.from_toggles(["markdown", "livehtml"])
    assert options.markdown and options.live_html and not options.syntax_highlight


def test_document_validation():
    assert is_valid_html_document(f"  {DOC}\n")
    assert not is_valid_html_document("<html><head></head><body></body></html>")
    assert not is_valid_html_document("<!DOCTYPE html><html><body></body></html>")
