"""HTML → компактный markdown для AI-экстракции."""
import re

import html2text
from bs4 import BeautifulSoup

MAX_MARKDOWN_LENGTH = 8000

# Блоки без контента события
_NOISE_TAGS = ["script", "style", "noscript", "template", "svg", "iframe", "nav", "footer", "header", "form"]


def html_to_markdown(html: str, base_url: str = "", max_length: int = MAX_MARKDOWN_LENGTH) -> str:
    """Убрать шум, сконвертировать в markdown, обрезать до max_length."""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup.find_all(_NOISE_TAGS):
        tag.decompose()
    root = soup.find("main") or soup.find("article") or soup.body or soup

    converter = html2text.HTML2Text(baseurl=base_url)
    converter.ignore_images = True
    converter.ignore_emphasis = True
    converter.body_width = 0
    markdown = converter.handle(str(root))

    markdown = re.sub(r"\n{3,}", "\n\n", markdown).strip()
    if len(markdown) > max_length:
        markdown = markdown[:max_length].rsplit("\n", 1)[0]
    return markdown
