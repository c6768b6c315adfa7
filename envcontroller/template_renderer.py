"""
Jinja2 template renderer for Kubernetes manifests.

Renders the base and overlay manifest templates of a service with the
feature environment's names and tags.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
)

from envcontroller.constants import DEFAULT_TEMPLATE_DIR, TEMPLATE_SUFFIX
from envcontroller.exceptions import TemplateError
from envcontroller.logger import get_logger

logger = get_logger(__name__)


def render_template(
    template_name: str, data: dict[str, Any], template_dir: str = DEFAULT_TEMPLATE_DIR
) -> str:
    """
    Render Jinja2 template with provided data.

    Args:
        template_name: Name of template file (e.g., 'deployment.yaml.j2')
        data: Template context
        template_dir: Directory containing templates

    Returns:
        str: Rendered YAML content

    Raises:
        TemplateError: If template not found, syntax error, or rendering fails
    """
    start_time = time.perf_counter()

    logger.debug(
        f"Rendering template: {template_name}",
        extra={"template": template_name, "template_dir": template_dir},
    )

    try:
        environment = Environment(
            loader=FileSystemLoader(template_dir),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        template = environment.get_template(template_name)
        rendered = template.render(data)

        logger.debug(
            "Rendered template",
            extra={
                "template": template_name,
                "size_bytes": len(rendered),
                "duration_seconds": round(time.perf_counter() - start_time, 3),
            },
        )
        return rendered

    except TemplateNotFound as e:
        raise TemplateError(f"Template not found: {template_name} in {template_dir}") from e

    except TemplateSyntaxError as e:
        raise TemplateError(
            f"Invalid syntax in template {template_name} at line {e.lineno}: {e.message}"
        ) from e

    except UndefinedError as e:
        raise TemplateError(f"Missing required variable in template {template_name}: {e}") from e

    except Exception as e:
        raise TemplateError(f"Failed to render template {template_name}: {e}") from e


def render_directory(template_dir: str, data: dict[str, Any]) -> list[tuple[str, str]]:
    """
    Render every manifest template in a directory, in file name order.

    Args:
        template_dir: Directory containing *.yaml.j2 files
        data: Template context

    Returns:
        List of (template name, rendered content)

    Raises:
        TemplateError: If the directory is missing or any template fails
    """
    directory = Path(template_dir)
    if not directory.is_dir():
        raise TemplateError(f"Template directory not found: {template_dir}")

    names = sorted(p.name for p in directory.iterdir() if p.name.endswith(TEMPLATE_SUFFIX))
    return [(name, render_template(name, data, template_dir)) for name in names]
