"""Agent prompt rendering.

This module provides:
- resolve_template_root: Find the templates directory
- get_template_environment: Cached template environment factory
- render_template: Render a template by name
- PromptBuilder: Builds every prompt the launcher hands to an agent
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound

from phaselauncher.core.config import LAUNCHER_DIRNAME, PRESETS, LauncherConfig
from phaselauncher.engine.validation import ValidationReport
from phaselauncher.plan import DispatchMode, Phase, Step


def resolve_template_root(custom_root: Path | None = None) -> Path:
    """Resolve the templates directory path.

    Searches in order:
    1. custom_root if provided and valid
    2. Package templates directory (phaselauncher/templates)

    Raises:
        FileNotFoundError: If no valid templates directory found.
    """
    if custom_root is not None and custom_root.is_dir():
        return custom_root.resolve()

    package_templates = Path(__file__).parent.parent / "templates"
    if package_templates.is_dir():
        return package_templates.resolve()

    raise FileNotFoundError("No templates directory found")


@lru_cache(maxsize=4)
def get_template_environment(template_root: Path) -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(template_root)),
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )
    env.filters["tojson"] = json.dumps
    return env


def render_template(
    name: str,
    context: dict[str, object],
    *,
    template_root: Path | None = None,
) -> str:
    """Render a template by name with the given context.

    Raises:
        FileNotFoundError: If template or templates directory not found.
    """
    root = resolve_template_root(template_root)
    env = get_template_environment(root)
    try:
        template = env.get_template(name)
    except TemplateNotFound as exc:
        raise FileNotFoundError(f"Template {name} not found in {root}") from exc
    return template.render(**context)


class PromptBuilder:
    """Renders agent prompts with the project's configuration baked in."""

    def __init__(self, config: LauncherConfig, *, template_root: Path | None = None) -> None:
        self._config = config
        self._template_root = template_root

    def _render(self, name: str, **context: object) -> str:
        base: dict[str, object] = {
            "project_name": self._config.name,
            "plan_path": f"{LAUNCHER_DIRNAME}/todos.json",
            "config_path": f"{LAUNCHER_DIRNAME}/config.json",
            "before_stop_commands": self._config.agent.before_stop_commands,
            "validation_commands": self._config.cto.validation_commands,
        }
        base.update(context)
        return render_template(name, base, template_root=self._template_root)

    def step_prompt(self, phase: Phase, step: Step, mode: DispatchMode) -> str:
        return self._render(
            "step.j2",
            phase=phase,
            step=step,
            parallel=mode is DispatchMode.PARALLEL,
            relaunch_command=relaunch_command(mode),
        )

    def task_prompt(self, task: str) -> str:
        return self._render("task.j2", task=task)

    def cto_fix_prompt(self, phase: Phase, report: ValidationReport) -> str:
        return self._render("cto_fix.j2", phase=phase, report=report)

    def plan_tasks_prompt(self, requirements: str) -> str:
        return self._render("plan_tasks.j2", requirements=requirements)

    def smart_init_prompt(self) -> str:
        return self._render("smart_init.j2", example_config=PRESETS["lamdera"])


def relaunch_command(mode: DispatchMode) -> str:
    return "plaunch step" if mode is DispatchMode.STEP_BY_STEP else "plaunch"


__all__ = [
    "PromptBuilder",
    "get_template_environment",
    "relaunch_command",
    "render_template",
    "resolve_template_root",
]
