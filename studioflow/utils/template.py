"""Template Rendering - {variable} and {{variable}} placeholders"""
import re
from typing import Dict


def render_template(template: str, variables: Dict[str, str]) -> str:
    """
    Render template variables in both {variable} and {{variable}} formats

    Double-brace tokens are matched first so a single-brace replacement never
    leaves stray braces behind. Unknown placeholders are left untouched.

    Example:
        >>> render_template("Hello {{first_name}} {last_name}!", {"first_name": "Ana", "last_name": "Diaz"})
        'Hello Ana Diaz!'
    """
    if not template:
        return ""

    rendered = template
    for key, value in variables.items():
        escaped_key = re.escape(key)
        pattern = re.compile(r"\{\{\s*" + escaped_key + r"\s*\}\}|\{\s*" + escaped_key + r"\s*\}")
        replacement = "" if value is None else str(value)
        rendered = pattern.sub(lambda _match: replacement, rendered)

    return rendered
