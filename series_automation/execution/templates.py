"""
Jinja2 rendering for block payload text.

Block subjects, titles and bodies are authored templates such as
"Hi {{ visitor.name or 'there' }}". They are rendered in a sandbox because
the text comes from workspace authors, not from this codebase.
"""

from functools import lru_cache
from typing import Optional

from jinja2 import TemplateError, TemplateSyntaxError, select_autoescape
from jinja2.sandbox import SandboxedEnvironment

from ..exceptions import BlockConfigurationError
from ..state.models import VisitorSnapshot


@lru_cache(maxsize=1)
def _get_environment() -> SandboxedEnvironment:
    """Create and cache the sandboxed Jinja2 environment."""
    return SandboxedEnvironment(
        autoescape=select_autoescape(default_for_string=False, default=False),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def template_syntax_error(source: Optional[str]) -> Optional[str]:
    """Returns a description of the syntax error in 'source', or None if it compiles."""
    if not source:
        return None
    try:
        _get_environment().parse(source)
    except TemplateSyntaxError as e:
        return f"line {e.lineno}: {e.message}"
    return None


def render_text(source: Optional[str], visitor: VisitorSnapshot) -> Optional[str]:
    """
    Render one payload field against the visitor.

    Exposed variables: 'visitor' (the snapshot) and 'attributes'
    (its custom attributes). Unknown names render as empty text.
    """
    if source is None:
        return None
    env = _get_environment()
    try:
        template = env.from_string(source)
        return template.render(visitor=visitor, attributes=visitor.custom_attributes)
    except TemplateError as e:
        raise BlockConfigurationError(f"Template could not be rendered: {e}") from e
