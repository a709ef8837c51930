"""Template renderer - pure placeholder substitution.

Placeholders look like ``{{name}}`` (inner whitespace allowed). Substitution
is textual: a placeholder without a matching variable is left exactly as
written, so rendering never fails on missing variables.
"""
import re
from dataclasses import dataclass
from typing import Mapping, Optional

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


@dataclass(frozen=True)
class RenderedContent:
    """Concrete content produced from a template."""
    title: str
    body: str
    click_action: Optional[str] = None


def render_text(text: Optional[str], variables: Mapping[str, object]) -> Optional[str]:
    """Substitute known placeholders in a single string."""
    if not text:
        return text

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def render(template, variables: Optional[Mapping[str, object]] = None) -> RenderedContent:
    """Render a template's title, body and click action.

    Args:
        template: Any object with ``title``, ``body`` and optional ``click_action``
        variables: Placeholder values

    Returns:
        RenderedContent with placeholders substituted
    """
    variables = variables or {}
    return RenderedContent(
        title=render_text(template.title, variables),
        body=render_text(template.body, variables),
        click_action=render_text(getattr(template, "click_action", None), variables),
    )


def template_variables(*texts: Optional[str]) -> list[str]:
    """List distinct placeholder names in order of first appearance."""
    seen: list[str] = []
    for text in texts:
        for name in PLACEHOLDER_PATTERN.findall(text or ""):
            if name not in seen:
                seen.append(name)
    return seen


def missing_variables(template, variables: Mapping[str, object]) -> list[str]:
    """Placeholders in a template that the caller did not supply."""
    names = template_variables(template.title, template.body, getattr(template, "click_action", None))
    return [name for name in names if name not in variables]
