# ==== PROMPT LOADER SERVICE ==== #

"""
Prompt loader for advisory model templates.

Prompts are Jinja2 templates shipped with the package. An override
directory can shadow any of them by file name, which lets operators tune
prompts without a release.
"""

from pathlib import Path
from typing import Any, Optional

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, StrictUndefined

from teamspend.settings import settings
from teamspend.observability.logging import get_logger


logger = get_logger(__name__)

# Base directory for built-in prompts
PROMPTS_DIR = Path(__file__).parent / "templates" / "prompts"


# ==== PROMPT LOADER CLASS ==== #


class PromptLoader:
    """
    Renders prompt templates by name.

    Undefined template variables raise instead of rendering as empty text,
    so a prompt never silently loses the data it was meant to carry.
    """

    def __init__(self, override_dir: Optional[Path] = None):
        """
        Initialize prompt loader.

        Args:
            override_dir (Optional[Path]): Directory whose templates take precedence
        """
        loaders = []
        if override_dir is not None and override_dir.exists():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(FileSystemLoader(str(PROMPTS_DIR)))

        self.jinja_env = Environment(
            loader=ChoiceLoader(loaders),
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined,
            autoescape=False,
        )

    def render_prompt(self, prompt_name: str, **kwargs: Any) -> str:
        """
        Render prompt template with variables.

        Args:
            prompt_name (str): Template name without the .j2 extension
            **kwargs (Any): Template variables for rendering

        Returns:
            str: Rendered prompt text
        """
        template = self.jinja_env.get_template(f"{prompt_name}.j2")
        prompt = template.render(**kwargs).strip()
        logger.debug("Rendered prompt", prompt_name=prompt_name, length=len(prompt))
        return prompt


# ==== GLOBAL INSTANCE ==== #

_prompt_loader: Optional[PromptLoader] = None


def get_prompt_loader() -> PromptLoader:
    """Get the shared prompt loader instance."""
    global _prompt_loader
    if _prompt_loader is None:
        override = Path(settings.AI_PROMPTS_DIR) if settings.AI_PROMPTS_DIR else None
        _prompt_loader = PromptLoader(override)
    return _prompt_loader
