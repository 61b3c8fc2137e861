"""Builds the self-dialogue and mutation prompts from jinja2 templates."""

from __future__ import annotations

from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from ..models import RepositoryTarget

ANSWER_MAX_WORDS = 80


class PromptBuilder:
    """Renders the four prompts used by one orchestration cycle."""

    def __init__(self, templates_dir: Path | None = None) -> None:
        default_dir = Path(__file__).with_name("templates")
        directories = [str(default_dir)]
        if templates_dir is not None and templates_dir != default_dir:
            # user templates shadow the packaged ones
            directories.insert(0, str(templates_dir))
        self._env = Environment(
            loader=FileSystemLoader(directories),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined,
        )

    def question(self, target: RepositoryTarget) -> str:
        return self._render("question.j2", target=target.slug)

    def answer(self, question: str) -> str:
        return self._render("answer.j2", question=question.strip(), max_words=ANSWER_MAX_WORDS)

    def decision(self, question: str, answer: str) -> str:
        return self._render("decision.j2", question=question.strip(), answer=answer.strip())

    def mutation(self, *, path: str, original: str, language: str, context: str = "") -> str:
        return self._render(
            "mutation.j2",
            path=path,
            original=original,
            language=language,
            context=context.strip(),
        )

    def _render(self, template_name: str, **values: object) -> str:
        return self._env.get_template(template_name).render(**values).strip()


__all__ = ["ANSWER_MAX_WORDS", "PromptBuilder"]
