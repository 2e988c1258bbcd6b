from __future__ import annotations

import io
from pathlib import Path, PurePosixPath

import pytest
from PIL import Image

from sardine.core import FileItem
from sardine.css import AutoprefixStage, SassStage
from sardine.images import ImageOptimizerStage
from sardine.jinja import JinjaTemplateStage
from sardine.minify import BundleStage, CSSMinifierStage, HTMLMinifierStage, JSMinifierStage
from sardine.test_harness import write_files


def item_for(path: Path, root: Path):
    return FileItem(PurePosixPath(path.relative_to(root).as_posix()), path.read_bytes(), path)


def text_item(relative: str, text: str):
    return FileItem(PurePosixPath(relative), text.encode('utf-8'))


@pytest.fixture
def styles(tmp_path: Path):
    return write_files(tmp_path / 'styles', {
        '_variables.scss': '$accent: #336699;\n$gap: 8px;\n',
        'main.scss': (
            "@import 'variables';\n"
            '.nav {\n'
            '  color: $accent;\n'
            '  a { margin: $gap * 2; }\n'
            '}\n'
        ),
        'broken.scss': '.nav { color: $missing; }\n',
    })


def test_sass_compiles_with_partials(styles: Path):
    result = SassStage().apply(item_for(styles / 'main.scss', styles))
    assert result.ok, result.error
    [output] = result.items
    assert output.relative == PurePosixPath('main.css')
    css = output.text()
    assert '.nav a {' in css
    assert 'margin: 16px;' in css
    assert '#336699' in css


def test_sass_include_paths(styles: Path, tmp_path: Path):
    write_files(tmp_path / 'vendor', {'_grid.scss': '@mixin row { display: flex; }\n'})
    item = text_item('layout.scss', "@import 'grid';\n.row { @include row; }\n")
    result = SassStage(include_paths=[tmp_path / 'vendor']).apply(item)
    assert result.ok, result.error
    assert 'display: flex;' in result.items[0].text()


def test_sass_error(styles: Path):
    result = SassStage().apply(item_for(styles / 'broken.scss', styles))
    assert not result.ok
    assert result.error.stage_id == 'sass'
    assert result.error.path == styles / 'broken.scss'
    assert 'Undefined variable' in result.error.message


def test_autoprefix():
    item = text_item('main.css', '.title {\n  user-select: none;\n}\n')
    result = AutoprefixStage().apply(item)
    assert result.ok, result.error
    css = result.items[0].text()
    assert '-webkit-user-select: none' in css
    assert 'user-select: none' in css
    assert '\n' in css.strip()


def test_autoprefix_skips_other_files():
    assert not AutoprefixStage().accepts(text_item('main.scss', ''))


def test_css_minifier():
    item = text_item('main.css', '.title {\n  color: #ff0000;\n  user-select: none;\n}\n')
    result = CSSMinifierStage().apply(item)
    assert result.ok, result.error
    css = result.items[0].text()
    assert '\n' not in css.strip()
    assert css.startswith('.title{')
    assert '-webkit-user-select:none' in css


def test_css_minifier_error():
    result = CSSMinifierStage().apply(text_item('bad.css', '.title { color: red; }\n!!! { color: blue; }\n'))
    assert not result.ok
    assert result.error.stage_id == 'cssmin'


def test_html_minifier():
    html = (
        '<!doctype html>\n<html>\n  <head>\n    <title>  Hello  </title>\n  </head>\n'
        '  <body>\n    <p>\n      Some    text\n    </p>\n  </body>\n</html>\n'
    )
    result = HTMLMinifierStage().apply(text_item('index.html', html))
    assert result.ok, result.error
    minified = result.items[0].text()
    assert len(minified) < len(html)
    assert '\n' not in minified.strip()
    assert 'Some text' in minified


def test_js_minifier():
    js = '// greeting\nfunction greet(name) {\n    return "Hello, " + name;\n}\n'
    result = JSMinifierStage().apply(text_item('scripts/main.js', js))
    assert result.ok, result.error
    minified = result.items[0].text()
    assert 'greeting' not in minified
    assert 'function greet(name){' in minified
    assert len(minified) < len(js)


@pytest.fixture
def working(tmp_path: Path):
    return write_files(tmp_path / 'working', {
        'styles/a.css': '.a { color: red; }',
        'styles/b.css': '.b { color: blue; }',
        'scripts/app.js': 'var a = 1;',
    })


def test_bundle(working: Path):
    html = (
        '<head>\n'
        '<!-- build:css styles/main.css -->\n'
        '<link rel="stylesheet" href="styles/a.css">\n'
        '<link rel="stylesheet" href="/styles/b.css?v=2">\n'
        '<!-- endbuild -->\n'
        '<!-- build:js scripts/all.js -->\n'
        '<script src="scripts/app.js"></script>\n'
        '<!-- endbuild -->\n'
        '</head>\n'
    )
    result = BundleStage(working).apply(text_item('index.html', html))
    assert result.ok, result.error
    page, *bundles = result.items
    assert page.relative == PurePosixPath('index.html')
    assert page.text() == (
        '<head>\n'
        '<link rel="stylesheet" href="styles/main.css">\n'
        '<script src="scripts/all.js"></script>\n'
        '</head>\n'
    )
    by_path = {b.relative.as_posix(): b for b in bundles}
    assert by_path['styles/main.css'].text() == '.a { color: red; }\n\n.b { color: blue; }'
    assert by_path['scripts/all.js'].text() == 'var a = 1;'
    assert by_path['styles/main.css'].meta['bundled_from'] == 'index.html'


def test_bundle_relative_to_page(working: Path):
    html = (
        '<!-- build:css ../styles/main.css -->'
        '<link rel="stylesheet" href="../styles/a.css">'
        '<!-- endbuild -->'
    )
    result = BundleStage(working).apply(text_item('about/index.html', html))
    assert result.ok, result.error
    assert [i.relative.as_posix() for i in result.items] == ['about/index.html', 'styles/main.css']


def test_bundle_without_blocks(working: Path):
    item = text_item('index.html', '<p>plain</p>')
    result = BundleStage(working).apply(item)
    assert result.items == [item]


@pytest.mark.parametrize('href', ['../outside.css', 'styles/missing.css'])
def test_bundle_errors(working: Path, href: str):
    html = f'<!-- build:css main.css --><link rel="stylesheet" href="{href}"><!-- endbuild -->'
    result = BundleStage(working).apply(text_item('index.html', html))
    assert not result.ok
    assert result.error.stage_id == 'bundle'


@pytest.fixture
def templates(tmp_path: Path):
    return write_files(tmp_path / 'templates', {
        'layouts/base.jinja': '<title>{% block title %}{% endblock %}</title><main>{% block content %}{% endblock %}</main>\n',
        'index.jinja': '{% extends "layouts/base.jinja" %}{% block title %}{{ site }}{% endblock %}{% block content %}<p>{{ "<b>" }}</p>{% endblock %}',
        'undefined.jinja': '<p>{{ nothing }}</p>',
    })


def test_jinja(templates: Path):
    stage = JinjaTemplateStage(search_path=templates, context={'site': 'Sardine'})
    result = stage.apply(item_for(templates / 'index.jinja', templates))
    assert result.ok, result.error
    [page] = result.items
    assert page.relative == PurePosixPath('index.html')
    assert page.text() == '<title>Sardine</title><main><p>&lt;b&gt;</p></main>\n'


def test_jinja_undefined(templates: Path):
    result = JinjaTemplateStage(search_path=templates).apply(item_for(templates / 'undefined.jinja', templates))
    assert not result.ok
    assert result.error.stage_id == 'jinja'
    assert "'nothing' is undefined" in result.error.message


def make_image(image_format: str, **params) -> bytes:
    image = Image.new('RGB', (64, 64))
    for x in range(64):
        for y in range(64):
            image.putpixel((x, y), (x * 4, y * 4, (x + y) * 2))
    output = io.BytesIO()
    if image_format == 'GIF':
        image = image.convert('P')
    image.save(output, format=image_format, **params)
    return output.getvalue()


@pytest.mark.parametrize('image_format,suffix,params', [
    ('PNG', '.png', {'compress_level': 0}),
    ('JPEG', '.jpg', {'quality': 90}),
    ('GIF', '.gif', {}),
])
def test_image_optimizer(image_format: str, suffix: str, params: dict):
    data = make_image(image_format, **params)
    result = ImageOptimizerStage().apply(FileItem(PurePosixPath(f'logo{suffix}'), data))
    assert result.ok, result.error
    [output] = result.items
    assert len(output.contents) <= len(data)
    assert output.meta['original_size'] == len(data)
    assert output.meta['size'] == len(output.contents)
    with Image.open(io.BytesIO(output.contents)) as image:
        assert image.format == image_format
        assert image.size == (64, 64)


def test_image_optimizer_shrinks_uncompressed_png():
    data = make_image('PNG', compress_level=0)
    output = ImageOptimizerStage().apply(FileItem(PurePosixPath('logo.png'), data)).items[0]
    assert len(output.contents) < len(data)


def test_image_optimizer_rejects_garbage():
    result = ImageOptimizerStage().apply(FileItem(PurePosixPath('logo.png'), b'not an image'))
    assert not result.ok
    assert result.error.stage_id == 'imagemin'


def test_image_optimizer_skips_other_files():
    assert not ImageOptimizerStage().accepts(FileItem(PurePosixPath('logo.svg'), b'<svg/>'))
