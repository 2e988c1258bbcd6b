"""
Stage for compiling Jinja templates into HTML pages.
"""
from __future__ import annotations

import typing as t
from pathlib import Path, PurePosixPath

from .dependencies import PipDependency
from .simple import BaseTextStage

if t.TYPE_CHECKING:
    from jinja2 import Environment
    from .core import FileItem


class JinjaTemplateStage(BaseTextStage):
    """
    Render each template file into a page. Templates may `extend` or `include`
    others found below @search_path (the template's own directory by default);
    @context is passed to every render.
    """
    stage_id = 'jinja'
    # Partials can change the output without the template itself changing.
    cacheable = False

    @classmethod
    def get_dependencies(cls):
        return {
            PipDependency('Jinja2', check_name='jinja2'),
        }

    def __init__(self,
                 search_path: Path | None = None,
                 context: dict[str, t.Any] | None = None,
                 ext: str = '.html',
                 env: Environment | None = None):
        self.search_path = search_path
        self.context = context or {}
        self.ext = ext
        self._env = env
        self._envs: dict[Path, Environment] = {}

    def config(self):
        return {'search_path': str(self.search_path), 'context': self.context, 'ext': self.ext}

    def get_env(self, directory: Path) -> Environment:
        """
        Returns the Jinja `Environment` for templates found in @directory,
        creating and caching it if necessary.
        """
        if self._env:
            return self._env
        root = Path(self.search_path or directory)
        if root not in self._envs:
            from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape
            self._envs[root] = Environment(
                loader=FileSystemLoader(root),
                autoescape=select_autoescape(default_for_string=True),
                undefined=StrictUndefined,
                trim_blocks=True,
                lstrip_blocks=True,
                keep_trailing_newline=True,
            )
        return self._envs[root]

    def rename(self, relative: PurePosixPath):
        return relative.with_suffix(self.ext)

    def transform_text(self, text: str, item: FileItem):
        directory = item.source.parent if item.source else Path('.')
        template = self.get_env(directory).from_string(text)
        return template.render(**self.context)
