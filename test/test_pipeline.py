from __future__ import annotations

from pathlib import Path, PurePosixPath

import pytest

from sardine.cache import TransformCache
from sardine.core import FileItem, Pipeline, Stage, StageRegistry
from sardine.errors import ConfigError, StageUnavailableError
from sardine.dependencies import PipDependency
from sardine.paths import GlobSet
from sardine.minify import BundleStage
from sardine.simple import CopyStage, RenameStage
from sardine.test_harness import CountingStage, FailingStage, SuffixStage, write_files


class SplitStage(Stage):
    def __init__(self):
        self.stage_id = 'split'

    def transform(self, item: FileItem):
        return [
            item.derive(relative=item.relative.with_suffix('.a')),
            item.derive(relative=item.relative.with_suffix('.b')),
        ]


class UnavailableStage(Stage):
    def __init__(self):
        self.stage_id = 'unavailable'

    @classmethod
    def get_dependencies(cls):
        return {PipDependency('not-a-real-package-sardine', check_name='not_a_real_package_sardine')}

    def transform(self, item: FileItem):
        return item


@pytest.fixture
def inputs(tmp_path: Path):
    write_files(tmp_path / 'src', {
        'a.txt': 'a',
        'b.txt': 'b',
        'c.txt': 'c',
        'nested/d.txt': 'd',
        'skip.md': 'md',
    })
    return GlobSet(tmp_path / 'src', '**/*.txt')


def read_tree(root: Path):
    return {
        path.relative_to(root).as_posix(): path.read_text()
        for path in sorted(root.rglob('*')) if path.is_file()
    }


def test_stages_run_in_order(inputs: GlobSet, tmp_path: Path):
    pipeline = Pipeline('order', inputs, tmp_path / 'out', [SuffixStage('1'), SuffixStage('2')])
    result = pipeline.run()
    assert result.ok
    assert read_tree(tmp_path / 'out') == {
        'a.txt': 'a12',
        'b.txt': 'b12',
        'c.txt': 'c12',
        'nested/d.txt': 'd12',
    }
    assert sorted(f.size for f in result.written) == [3, 3, 3, 3]


def test_no_stages_copies(inputs: GlobSet, tmp_path: Path):
    result = Pipeline('copy', inputs, tmp_path / 'out').run()
    assert result.ok
    assert read_tree(tmp_path / 'out') == {'a.txt': 'a', 'b.txt': 'b', 'c.txt': 'c', 'nested/d.txt': 'd'}


def test_partial_failure_isolated(inputs: GlobSet, tmp_path: Path):
    after = CountingStage('after')
    pipeline = Pipeline('isolation', inputs, tmp_path / 'out', [FailingStage(only='b.txt'), after])
    result = pipeline.run()

    assert not result.ok
    assert len(result.errors) == 1
    error = result.errors[0]
    assert error.stage_id == 'failing'
    assert error.path == tmp_path / 'src' / 'b.txt'
    assert error.message == 'boom'
    assert str(error) == f'[failing] ({tmp_path / "src" / "b.txt"}) boom'

    # The failed file stops at its stage; siblings go all the way through.
    assert sorted(after.seen) == ['a.txt', 'c.txt', 'nested/d.txt']
    assert sorted(read_tree(tmp_path / 'out')) == ['a.txt', 'c.txt', 'nested/d.txt']


def test_every_file_failing(inputs: GlobSet, tmp_path: Path):
    result = Pipeline('fail', inputs, tmp_path / 'out', [FailingStage()]).run()
    assert len(result.errors) == 4
    assert result.written == []
    assert not (tmp_path / 'out').exists()


def test_unaccepted_files_pass_through(tmp_path: Path):
    write_files(tmp_path / 'src', {'page.html': 'html', 'main.css': 'css'})
    css_only = CountingStage('css-only', suffixes=('.css',))
    result = Pipeline('accepts', GlobSet(tmp_path / 'src', '*'), tmp_path / 'out', [css_only]).run()
    assert result.ok
    assert css_only.seen == ['main.css']
    assert read_tree(tmp_path / 'out') == {'page.html': 'html', 'main.css': 'css'}


def test_stage_fan_out(inputs: GlobSet, tmp_path: Path):
    counting = CountingStage()
    result = Pipeline('split', GlobSet(inputs.root, 'a.txt'), tmp_path / 'out', [SplitStage(), counting]).run()
    assert result.ok
    assert sorted(counting.seen) == ['a.a', 'a.b']
    assert read_tree(tmp_path / 'out') == {'a.a': 'a', 'a.b': 'a'}


def test_rename_keeps_directory(tmp_path: Path):
    write_files(tmp_path / 'src', {'styles/site.css': 'x'})
    pipeline = Pipeline('rename', GlobSet(tmp_path / 'src', '**/*.css'), tmp_path / 'out', [RenameStage('main.css')])
    assert pipeline.run().ok
    assert read_tree(tmp_path / 'out') == {'styles/main.css': 'x'}


def test_rename_rejects_paths():
    with pytest.raises(ValueError):
        RenameStage('styles/main.css')


def test_empty_input(tmp_path: Path):
    result = Pipeline('empty', GlobSet(tmp_path, '*.nothing'), tmp_path / 'out', [FailingStage()]).run()
    assert result.ok
    assert result.written == []


def test_unavailable_stage(inputs: GlobSet, tmp_path: Path):
    assert not UnavailableStage.is_available()
    pipeline = Pipeline('unavailable', inputs, tmp_path / 'out', [UnavailableStage()])
    with pytest.raises(StageUnavailableError) as exc_info:
        pipeline.run()
    assert 'pip install not-a-real-package-sardine' in str(exc_info.value)
    assert isinstance(exc_info.value, ConfigError)


def test_cache_skips_unchanged_inputs(inputs: GlobSet, tmp_path: Path):
    cache = TransformCache()
    counting = CountingStage()
    pipeline = Pipeline('cached', inputs, tmp_path / 'out', [counting, SuffixStage('!')], cache=cache)

    assert pipeline.run().ok
    first = read_tree(tmp_path / 'out')
    assert counting.count == 4

    assert pipeline.run().ok
    assert read_tree(tmp_path / 'out') == first
    assert counting.count == 4
    assert cache.hits == 8

    (inputs.root / 'a.txt').write_text('changed')
    assert pipeline.run().ok
    assert counting.seen.count('a.txt') == 2
    assert counting.count == 5
    assert read_tree(tmp_path / 'out')['a.txt'] == 'changed!'


def test_cache_persists(inputs: GlobSet, tmp_path: Path):
    cache_dir = tmp_path / 'cache'
    first_stage = CountingStage()
    Pipeline('cached', inputs, tmp_path / 'out', [first_stage], cache=TransformCache(cache_dir)).run()
    assert first_stage.count == 4
    assert (cache_dir / 'index.json').exists()

    second_stage = CountingStage()
    second_cache = TransformCache(cache_dir)
    result = Pipeline('cached', inputs, tmp_path / 'out2', [second_stage], cache=second_cache).run()
    assert result.ok
    assert second_stage.count == 0
    assert second_cache.hits == 4
    assert read_tree(tmp_path / 'out2') == read_tree(tmp_path / 'out')


def test_cache_keyed_by_config(inputs: GlobSet, tmp_path: Path):
    cache = TransformCache()
    Pipeline('one', inputs, tmp_path / 'one', [SuffixStage('1')], cache=cache).run()
    Pipeline('two', inputs, tmp_path / 'two', [SuffixStage('2')], cache=cache).run()
    assert cache.hits == 0
    assert read_tree(tmp_path / 'two')['a.txt'] == 'a2'


def test_cache_ignores_failures(inputs: GlobSet, tmp_path: Path):
    cache = TransformCache()
    Pipeline('fail', inputs, tmp_path / 'out', [FailingStage()], cache=cache).run()
    assert len(cache) == 0


def test_cache_deleted_blobs_are_misses(inputs: GlobSet, tmp_path: Path):
    cache_dir = tmp_path / 'cache'
    Pipeline('cached', inputs, tmp_path / 'out', [CountingStage()], cache=TransformCache(cache_dir)).run()
    for blob in (cache_dir / 'blobs').iterdir():
        blob.unlink()

    counting = CountingStage()
    result = Pipeline('cached', inputs, tmp_path / 'out', [counting], cache=TransformCache(cache_dir)).run()
    assert result.ok
    assert counting.count == 4


def test_file_item_derive():
    item = FileItem(PurePosixPath('a/b.txt'), b'one', meta={'x': 1})
    derived = item.derive(text='two', relative='a/c.txt')
    assert derived.contents == b'two'
    assert derived.relative == PurePosixPath('a/c.txt')
    assert derived.meta == {'x': 1}
    assert derived.meta is not item.meta
    assert item.contents == b'one'


def test_registry():
    registry = StageRegistry({'copy': CopyStage})
    assert 'copy' in registry
    assert isinstance(registry.create('copy'), CopyStage)

    @registry.register('loud')
    def make_loud(**config):
        return SuffixStage('!', stage_id='loud')

    assert isinstance(registry.create('loud'), SuffixStage)
    with pytest.raises(ConfigError):
        registry.create('missing')


def test_default_registry():
    registry = StageRegistry.default()
    for stage_id in ('jinja', 'sass', 'autoprefix', 'rename', 'bundle', 'cssmin', 'htmlmin', 'jsmin', 'imagemin', 'copy'):
        assert stage_id in registry
    assert SplitStage not in Stage.get_all_stages()
    assert 'split' not in registry


@pytest.fixture
def bundled_site(tmp_path: Path):
    page = (
        '<!-- build:css styles/main.css -->'
        '<link rel="stylesheet" href="styles/main.css">'
        '<link rel="stylesheet" href="styles/vendor.css">'
        '<!-- endbuild -->'
    )
    return write_files(tmp_path / 'work', {
        'index.html': page,
        'about.html': page,
        'styles/main.css': 'a{}',
        'styles/vendor.css': 'b{}',
    })


def test_bundle_replaces_its_own_input(bundled_site: Path, tmp_path: Path):
    result = Pipeline('html', GlobSet(bundled_site, '**/*.*'), tmp_path / 'out', [BundleStage(bundled_site)]).run()
    assert result.ok, result.errors
    assert (tmp_path / 'out' / 'styles' / 'main.css').read_text() == 'a{}\n\nb{}'
    assert (tmp_path / 'out' / 'styles' / 'vendor.css').read_text() == 'b{}'

    # Both pages produce the same bundle; it is written once.
    paths = [output.path for output in result.written]
    assert len(paths) == len(set(paths)) == 4


def test_clashing_outputs(inputs: GlobSet, tmp_path: Path):
    result = Pipeline('clash', inputs, tmp_path / 'out', [RenameStage('same.txt')]).run()
    assert len(result.errors) == 2
    for error in result.errors:
        assert error.stage_id == 'write'
        assert error.path == tmp_path / 'out' / 'same.txt'
        assert 'written by both' in error.message
    assert read_tree(tmp_path / 'out') == {'same.txt': 'a', 'nested/same.txt': 'd'}
    assert len(result.written) == 2
