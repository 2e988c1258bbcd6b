"""
Stages for reducing the load cost of webpages by combining and minifying
resources.
"""
from __future__ import annotations

import posixpath
import re
from pathlib import Path, PurePosixPath

from .core import FileItem, Stage
from .css import BaseLightningCSSStage
from .dependencies import PipDependency
from .simple import BaseTextStage


BUILD_BLOCK_RE = re.compile(
    r'<!--\s*build:(?P<kind>css|js)\s+(?P<target>\S+)\s*-->'
    r'(?P<body>.*?)'
    r'<!--\s*endbuild\s*-->',
    re.DOTALL | re.IGNORECASE,
)
REFERENCE_RE = re.compile(
    r'<(?:link|script)\b[^>]*?\b(?:href|src)\s*=\s*["\'](?P<ref>[^"\']+)["\']',
    re.IGNORECASE,
)
BUNDLE_TAGS = {
    'css': '<link rel="stylesheet" href="{}">',
    'js': '<script src="{}"></script>',
}
BUNDLE_SEPARATORS = {
    'css': '\n\n',
    'js': ';\n\n',
}


class BundleStage(Stage):
    """
    Concatenate the stylesheets and scripts referenced in HTML build blocks:

        <!-- build:css styles/main.css -->
        <link rel="stylesheet" href="styles/a.css">
        <link rel="stylesheet" href="styles/b.css">
        <!-- endbuild -->

    The block is replaced with a single reference to the target, and the
    bundle is emitted as an additional file. Referenced files are read from
    @search_path; relative references and targets are resolved against the
    HTML file's directory.
    """
    stage_id = 'bundle'
    suffixes = ('.html', '.htm')
    cacheable = False
    encoding = 'utf-8'

    def __init__(self, search_path: Path):
        self.search_path = Path(search_path)

    def resolve(self, html_dir: PurePosixPath, reference: str) -> PurePosixPath:
        reference = reference.split('?', 1)[0].split('#', 1)[0]
        if reference.startswith('/'):
            joined = reference.lstrip('/')
        else:
            joined = posixpath.join(html_dir.as_posix(), reference)
        normalized = posixpath.normpath(joined)
        if normalized.startswith('..'):
            raise ValueError(f'Reference {reference!r} escapes the search path')
        return PurePosixPath(normalized)

    def transform(self, item: FileItem):
        html_dir = item.relative.parent
        bundles: dict[PurePosixPath, str] = {}

        def replace_block(match: re.Match[str]):
            kind = match['kind'].lower()
            target = match['target']
            parts = [
                (self.search_path / self.resolve(html_dir, ref['ref'])).read_text(self.encoding)
                for ref in REFERENCE_RE.finditer(match['body'])
            ]
            bundles[self.resolve(html_dir, target)] = BUNDLE_SEPARATORS[kind].join(parts)
            return BUNDLE_TAGS[kind].format(target)

        text = BUILD_BLOCK_RE.sub(replace_block, item.text(self.encoding))
        if not bundles:
            return item
        return [item.derive(text=text)] + [
            FileItem(relative, data.encode(self.encoding), meta={'bundled_from': item.relative.as_posix()})
            for relative, data in bundles.items()
        ]


class CSSMinifierStage(BaseLightningCSSStage):
    """
    A CSS minification Stage using lightningcss, which can also lower syntax
    for the browsers supported and drop unused symbols.
    """
    stage_id = 'cssmin'
    minify = True


class HTMLMinifierStage(BaseTextStage):
    """
    A fast HTML minification Stage which collapses whitespace and minifies
    inline styles and scripts.
    """
    stage_id = 'htmlmin'
    suffixes = ('.html', '.htm')

    @classmethod
    def get_dependencies(cls):
        return {
            PipDependency('minify-html', check_name='minify_html'),
        }

    def __init__(self, minify_css: bool = True, minify_js: bool = True):
        self.minify_css = minify_css
        self.minify_js = minify_js

    def transform_text(self, text: str, item: FileItem):
        from minify_html import minify
        return minify(text, minify_css=self.minify_css, minify_js=self.minify_js)


class JSMinifierStage(BaseTextStage):
    """
    A JavaScript minification Stage using rjsmin.
    """
    stage_id = 'jsmin'
    suffixes = ('.js',)

    @classmethod
    def get_dependencies(cls):
        return {
            PipDependency('rjsmin'),
        }

    def __init__(self, keep_bang_comments: bool = False):
        self.keep_bang_comments = keep_bang_comments

    def transform_text(self, text: str, item: FileItem):
        import rjsmin
        return rjsmin.jsmin(text, keep_bang_comments=self.keep_bang_comments)
