"""Тесты конвертации HTML → markdown."""
from src.ai.markdown import html_to_markdown

PAGE = """
<html><head><title>x</title><script>var tracking = 1;</script></head>
<body>
  <nav><a href="/">Home</a><a href="/over">Over ons</a></nav>
  <main>
    <h1>Jazz Night</h1>
    <p>Deuren open <strong>20:00</strong>, aanvang 20:30.</p>
    <a href="/tickets/jazz">Tickets</a>
  </main>
  <footer>Cookiebeleid</footer>
</body></html>
"""


class TestHtmlToMarkdown:
    """Тесты html_to_markdown."""

    def test_keeps_main_content(self) -> None:
        markdown = html_to_markdown(PAGE, "https://www.paradiso.nl")
        assert "# Jazz Night" in markdown
        assert "20:30" in markdown

    def test_drops_noise(self) -> None:
        markdown = html_to_markdown(PAGE)
        assert "tracking" not in markdown
        assert "Over ons" not in markdown
        assert "Cookiebeleid" not in markdown

    def test_links_are_absolute(self) -> None:
        markdown = html_to_markdown(PAGE, "https://www.paradiso.nl")
        assert "https://www.paradiso.nl/tickets/jazz" in markdown

    def test_truncates_on_line_boundary(self) -> None:
        html = "<main>" + "".join(f"<p>Regel nummer {i}</p>" for i in range(200)) + "</main>"
        markdown = html_to_markdown(html, max_length=100)
        assert len(markdown) <= 100
        assert markdown.startswith("Regel nummer 0")
        assert all(not line or line.startswith("Regel nummer") for line in markdown.splitlines())

    def test_empty_document(self) -> None:
        assert html_to_markdown("") == ""
