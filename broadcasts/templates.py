from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Tuple

from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment
from sqlalchemy.orm import sessionmaker

from .config import DEFAULT_LOCALE, MAIL_FROM_NAME, SUPPORTED_LOCALES
from .db import EmailTemplateModel
from .errors import TemplateRenderingError

LOGGER = logging.getLogger(__name__)

_ENV = SandboxedEnvironment(autoescape=False, keep_trailing_newline=True)

ANNOUNCEMENT_HTML = """<h2 style="color: #18181b; margin: 0 0 20px 0;">{{ title }}</h2>
<p style="color: #3f3f46; font-size: 16px; line-height: 1.6;">{{ content }}</p>
{% if ctaUrl %}<p style="text-align: center; margin: 30px 0;">
  <a href="{{ ctaUrl }}" style="background: #8b5cf6; color: #ffffff; padding: 14px 28px; border-radius: 8px; text-decoration: none;">{{ ctaText or ctaUrl }}</a>
</p>{% endif %}"""

BUILTIN_TEMPLATES = {
    "announcement": ("{{ subject }}", ANNOUNCEMENT_HTML),
}

HTML_SHELL = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: Arial, sans-serif; background-color: #f4f4f5; margin: 0; padding: 20px;">
  <div style="max-width: 560px; margin: 0 auto; background-color: #ffffff; border-radius: 12px;">
    <div style="padding: 40px 30px;">
      {{ body }}
    </div>
    <div style="background-color: #f4f4f5; padding: 20px 30px; text-align: center;">
      <p style="color: #a1a1aa; font-size: 12px; margin: 0;">&copy; {{ year }} {{ from_name }}</p>
    </div>
  </div>
</body>
</html>"""


def normalize_locale(language: Optional[str], default: str = DEFAULT_LOCALE) -> str:
    """Reduce tags like ``pt-BR`` or ``en_US`` to a supported base locale."""
    if not language:
        return default
    base = str(language).replace("_", "-").split("-")[0].strip().lower()
    return base if base in SUPPORTED_LOCALES else default


def localize(texts: Optional[Mapping[str, str]], locale: str, default: str = DEFAULT_LOCALE) -> Optional[str]:
    """Pick the text for ``locale``, falling back to the default locale."""
    if not texts:
        return None
    for key in (locale, default, "default"):
        value = texts.get(key)
        if value:
            return value
    return next((value for value in texts.values() if value), None)


def render_string(template: str, data: Mapping[str, Any]) -> str:
    try:
        return _ENV.from_string(template).render(**data)
    except TemplateError as exc:
        raise TemplateRenderingError(f"Template rendering failed: {exc}") from exc


def wrap_html(body: str, *, year: int, from_name: str = MAIL_FROM_NAME) -> str:
    """Wrap a plain-text body in the default HTML shell."""
    if "<html" in body or "<body" in body:
        return body
    return render_string(HTML_SHELL, {"body": body.replace("\n", "<br>"), "year": year, "from_name": from_name})


class TemplateRenderer:
    """Resolves a template key and substitutes a flat key/value map into it."""

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self._session_factory = session_factory

    def load(self, template_key: str) -> Tuple[str, str]:
        if self._session_factory is not None:
            with self._session_factory() as session:
                row = (
                    session.query(EmailTemplateModel)
                    .filter(EmailTemplateModel.template_key == template_key, EmailTemplateModel.is_active.is_(True))
                    .first()
                )
            if row is not None:
                return row.subject, row.html_content
        if template_key in BUILTIN_TEMPLATES:
            return BUILTIN_TEMPLATES[template_key]
        raise TemplateRenderingError(f"Unknown email template: {template_key}")

    def render(self, template_key: str, data: Mapping[str, Any]) -> Tuple[str, str]:
        subject_template, body_template = self.load(template_key)
        subject = render_string(subject_template, data)
        body = render_string(body_template, data)
        year = data.get("year") or 0
        return subject, wrap_html(body, year=year, from_name=data.get("fromName") or MAIL_FROM_NAME)
