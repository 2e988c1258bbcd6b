"""
Stages for compiling SCSS into CSS and adding vendor prefixes.
"""
from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path, PurePosixPath

from .core import FileItem
from .dependencies import PipDependency
from .simple import BaseTextStage


DEFAULT_BROWSERS = ('> 1%', 'last 5 versions', 'Firefox ESR')


class SassStage(BaseTextStage):
    """
    Compile SCSS with libsass. The file's own directory is always searched for
    imports, followed by @include_paths.
    """
    stage_id = 'sass'
    suffixes = ('.scss', '.sass')
    # Imported partials aren't part of the cache key.
    cacheable = False

    @classmethod
    def get_dependencies(cls):
        return {
            PipDependency('libsass', check_name='sass'),
        }

    def __init__(self,
                 output_style: str = 'expanded',
                 precision: int = 10,
                 include_paths: Sequence[Path | str] = (),
                 source_comments: bool = False):
        self.output_style = output_style
        self.precision = precision
        self.include_paths = [str(p) for p in include_paths]
        self.source_comments = source_comments

    def rename(self, relative: PurePosixPath):
        return relative.with_suffix('.css')

    def transform_text(self, text: str, item: FileItem):
        import sass
        include_paths = list(self.include_paths)
        if item.source:
            include_paths.insert(0, str(item.source.parent))
        return sass.compile(
            string=text,
            output_style=self.output_style,
            precision=self.precision,
            include_paths=include_paths,
            source_comments=self.source_comments,
            indented=item.suffix == '.sass',
        )


class BaseLightningCSSStage(BaseTextStage):
    """
    Shared base for Stages built on lightningcss, which lowers and prefixes
    CSS for the browsers in @browsers_list and can also minify it.
    """
    suffixes = ('.css',)
    minify = False

    @classmethod
    def get_dependencies(cls):
        return {
            PipDependency('lightningcss'),
        }

    def __init__(self,
                 browsers_list: Sequence[str] | None = DEFAULT_BROWSERS,
                 error_recovery: bool = False,
                 parser_flags: dict[str, bool] | None = None,
                 unused_symbols: set[str] | None = None):
        self.browsers_list = list(browsers_list) if browsers_list else None
        self.error_recovery = error_recovery
        self.parser_flags = parser_flags or {}
        self.unused_symbols = sorted(unused_symbols) if unused_symbols else None

    def transform_text(self, text: str, item: FileItem):
        import lightningcss
        return lightningcss.process_stylesheet(
            text,
            filename=str(item.label),
            error_recovery=self.error_recovery,
            parser_flags=lightningcss.calc_parser_flags(**self.parser_flags),
            unused_symbols=set(self.unused_symbols) if self.unused_symbols else None,
            browsers_list=self.browsers_list,
            minify=self.minify,
        )


class AutoprefixStage(BaseLightningCSSStage):
    """
    Add the vendor prefixes needed by the targeted browsers, leaving the
    stylesheet readable.
    """
    stage_id = 'autoprefix'
