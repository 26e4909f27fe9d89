from chatbot.app.rendering import render_markdown


def test_render_markdown_basic():
    html = render_markdown("# Title\n\n- a\n- b")
    assert "<h1>Title</h1>" in html
    assert "<li>a</li>" in html


def test_render_markdown_escapes_html():
    html = render_markdown("<img src=x onerror=alert(1)>")
    assert "<img" not in html
    assert "&lt;img" in html


def test_render_markdown_handles_none():
    assert render_markdown(None) == ""
