"""Minimal HTML documents for the browser-facing return legs."""
from dataclasses import dataclass
from html import escape

_TONES = {
    "success": "#16a34a",
    "pending": "#d97706",
    "error": "#dc2626",
}

_TEMPLATE = """<!DOCTYPE html>
<html>
  <head>
    <title>{title} - {brand}</title>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
  </head>
  <body style="font-family: system-ui; display: flex; align-items: center; justify-content: center; min-height: 100vh; margin: 0; background: #f5f5f5;">
    <div style="text-align: center; padding: 2rem; background: white; border-radius: 8px; box-shadow: 0 2px 8px rgba(0,0,0,0.1);">
      <h1 style="color: {color};">{title}</h1>
      <p>{message}</p>
      <p style="margin-top: 1rem;"><a href="{href}" style="color: #2563eb; text-decoration: none;">{label}</a></p>
    </div>
  </body>
</html>
"""


@dataclass(frozen=True)
class HtmlPage:
    status_code: int
    content: str


def render_page(
    *,
    status_code: int,
    title: str,
    message: str,
    href: str,
    label: str,
    tone: str = "success",
    brand: str = "Seencel",
) -> HtmlPage:
    return HtmlPage(
        status_code=status_code,
        content=_TEMPLATE.format(
            title=escape(title),
            brand=escape(brand),
            color=_TONES.get(tone, _TONES["error"]),
            message=escape(message),
            href=escape(href, quote=True),
            label=escape(label),
        ),
    )
