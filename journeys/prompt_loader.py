"""Load prompt files from the package's prompts/ directory.

Prompts are stored as .md files under ``journeys/prompts/``. Callers pass
their own ``__file__`` so the lookup does not depend on the working
directory::

    from journeys.prompt_loader import load_prompt

    system = load_prompt(__file__, "story_system")
"""

from pathlib import Path


def load_prompt(caller_file: str, prompt_name: str) -> str:
    """Read a prompt markdown file next to the caller's module.

    Raises:
        FileNotFoundError: If the prompt file does not exist.
    """
    prompt_path = Path(caller_file).resolve().parent / "prompts" / f"{prompt_name}.md"
    return prompt_path.read_text(encoding="utf-8")
