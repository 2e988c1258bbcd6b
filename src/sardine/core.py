"""
Core classes and types for the Sardine file pipeline.
"""
from __future__ import annotations

import abc
import dataclasses
import os
import typing as t
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path, PurePosixPath

from .cache import TransformCache, config_hash, content_key
from .dependencies import Dependency
from .errors import ConfigError, StageError, StageUnavailableError
from .paths import GlobSet
from .pretty_utils import track_progress

if t.TYPE_CHECKING:
    from collections.abc import Callable, Sequence, Set


CacheKeyFunc = t.Callable[['Stage', 'FileItem'], str]


@dataclasses.dataclass
class FileItem:
    """
    A file travelling through a pipeline. @relative is where it will be
    written, relative to the pipeline's output directory; @source is the file
    it was read from, if any.
    """
    relative: PurePosixPath
    contents: bytes
    source: Path | None = None
    meta: dict[str, t.Any] = dataclasses.field(default_factory=dict)

    @property
    def suffix(self):
        return self.relative.suffix

    @property
    def label(self):
        """
        The most useful path to show a person looking at a diagnostic.
        """
        return self.source or Path(self.relative)

    @property
    def bundled(self):
        """
        Whether this item was assembled from other files by a bundling stage.
        """
        return 'bundled_from' in self.meta

    def text(self, encoding: str = 'utf-8'):
        return self.contents.decode(encoding)

    def derive(self, **changes: t.Any) -> FileItem:
        """
        Copy this item with some fields replaced. Text can be given as
        `text=...` instead of `contents=...`.
        """
        if 'text' in changes:
            changes['contents'] = changes.pop('text').encode('utf-8')
        if 'relative' in changes:
            changes['relative'] = PurePosixPath(changes['relative'])
        changes.setdefault('meta', dict(self.meta))
        return dataclasses.replace(self, **changes)


class TransformResult:
    """
    The outcome of applying one stage to one file: either the produced items
    or an error.
    """
    def __init__(self, items: Sequence[FileItem] = (), error: StageError | None = None):
        self.items = list(items)
        self.error = error

    @property
    def ok(self):
        return self.error is None

    def __repr__(self):
        if self.error:
            return f'TransformResult(error={self.error!r})'
        return f'TransformResult({[i.relative.as_posix() for i in self.items]!r})'


@dataclasses.dataclass(frozen=True)
class OutputFile:
    path: Path
    size: int


@dataclasses.dataclass
class PipelineResult:
    written: list[OutputFile] = dataclasses.field(default_factory=list)
    errors: list[StageError] = dataclasses.field(default_factory=list)

    @property
    def ok(self):
        return not self.errors


class Stage(abc.ABC):
    """
    Abstract base class for Stages, single file transformations which can be
    chained into a Pipeline.

    Subclasses set `stage_id` and implement `transform()`. Public instance
    attributes make up the stage's configuration for caching purposes.
    """
    stage_id: t.ClassVar[str] = ''
    # Only files with these suffixes are transformed; others pass through.
    # Empty means every file.
    suffixes: t.ClassVar[tuple[str, ...]] = ()
    # Stages whose output depends on anything besides the item itself must
    # not be cached.
    cacheable: t.ClassVar[bool] = True

    _stage_registry: t.ClassVar[list[type[Stage]]] = []

    def __init_subclass__(cls, **kw):
        super().__init_subclass__(**kw)
        if cls.stage_id:
            cls._stage_registry.append(cls)

    @classmethod
    def get_all_stages(cls):
        """
        Return a list of all currently known Stage classes.
        """
        return list(cls._stage_registry)

    @classmethod
    def is_available(cls) -> bool:
        """
        Return whether this Stage's requirements are installed.
        """
        return all(d.satisfied for d in cls.get_dependencies())

    @classmethod
    def get_dependencies(cls) -> Set[Dependency]:
        """
        Return the requirements for this Stage.
        """
        return set()

    def config(self) -> dict[str, t.Any]:
        return {k: v for k, v in vars(self).items() if not k.startswith('_')}

    def accepts(self, item: FileItem):
        return not self.suffixes or item.suffix.lower() in self.suffixes

    @abc.abstractmethod
    def transform(self, item: FileItem) -> FileItem | Sequence[FileItem]:
        """
        Transform @item, returning one or more items. May raise; `apply()`
        turns exceptions into errors.
        """

    def apply(self, item: FileItem) -> TransformResult:
        """
        Run `transform()` on @item, capturing any failure as a StageError
        tagged with this stage and the file's path.
        """
        try:
            produced = self.transform(item)
        except Exception as e:
            message = str(e).strip() or e.__class__.__name__
            return TransformResult(error=StageError(self.stage_id, item.label, message))
        if isinstance(produced, FileItem):
            produced = [produced]
        return TransformResult(produced)

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.stage_id!r}>'


StageFactory = t.Callable[..., Stage]


class StageRegistry:
    """
    Maps stage identifiers to factories. Pipelines are declared in terms of
    identifiers, so a registry of fakes can stand in for the real stages.
    """
    def __init__(self, factories: dict[str, StageFactory] | None = None):
        self.factories: dict[str, StageFactory] = dict(factories or {})

    @classmethod
    def default(cls):
        """
        Registry of every Stage subclass defined with a `stage_id`.
        """
        # Importing the stage modules registers their classes.
        from . import css, images, jinja, minify, simple
        return cls({s.stage_id: s for s in Stage.get_all_stages()})

    def __contains__(self, stage_id: str):
        return stage_id in self.factories

    def register(self, stage_id: str, factory: StageFactory | None = None):
        """
        Register @factory for @stage_id. Can be used as a decorator.
        """
        if factory is not None:
            self.factories[stage_id] = factory
            return factory

        def decorator(func: StageFactory):
            self.factories[stage_id] = func
            return func
        return decorator

    def update(self, factories: dict[str, StageFactory]):
        self.factories.update(factories)

    def create(self, stage_id: str, **config: t.Any) -> Stage:
        try:
            factory = self.factories[stage_id]
        except KeyError:
            raise ConfigError(f'No stage registered as {stage_id!r}') from None
        return factory(**config)


class Pipeline:
    """
    An ordered chain of Stages applied to every file matched by a GlobSet,
    with results written below @output_dir.

    Files are processed concurrently and independently: a stage error stops
    only the file it happened on.
    """
    def __init__(self,
                 name: str,
                 inputs: GlobSet,
                 output_dir: Path,
                 stages: Sequence[Stage] = (),
                 cache: TransformCache | None = None,
                 cache_key: CacheKeyFunc = content_key,
                 max_workers: int | None = None):
        self.name = name
        self.inputs = inputs
        self.output_dir = Path(output_dir)
        self.stages = tuple(stages)
        self.cache = cache
        self.cache_key = cache_key
        self.max_workers = max_workers or min(8, (os.cpu_count() or 1) + 2)
        self._config_hashes = {id(s): config_hash(s) for s in self.stages if s.cacheable}

    def __repr__(self):
        stages = ' | '.join(s.stage_id for s in self.stages) or 'copy'
        return f'<Pipeline {self.name}: {self.inputs!r} | {stages} > {self.output_dir}>'

    def check_available(self):
        for stage in self.stages:
            if not stage.is_available():
                raise StageUnavailableError(stage)

    def run(self, globs: GlobSet | None = None) -> PipelineResult:
        """
        Process every file matched by @globs (the pipeline's own inputs by
        default). Outputs are only written once every file went through the
        stages, so that clashing output paths can be settled first.
        """
        self.check_available()
        sources = sorted((globs or self.inputs).find(), key=lambda source: source[1])
        result = PipelineResult()
        if not sources:
            return result

        produced: list[FileItem] = []
        with ThreadPoolExecutor(self.max_workers, thread_name_prefix=f'sardine-{self.name}') as pool:
            outcomes = pool.map(self.process_file, *zip(*sources))
            for items, errors in track_progress(outcomes, f'{self.name}...', total=len(sources)):
                produced.extend(items)
                result.errors.extend(errors)

            outputs, clashes = self.resolve_outputs(produced)
            result.errors.extend(clashes)
            for written, error in pool.map(self.write_item, outputs):
                if written:
                    result.written.append(written)
                if error:
                    result.errors.append(error)

        if self.cache:
            self.cache.flush()
        return result

    def process_file(self, path: Path, relative: PurePosixPath) -> tuple[list[FileItem], list[StageError]]:
        """
        Read @path and thread it through every stage, returning what comes out.
        """
        try:
            item = FileItem(relative, path.read_bytes(), path)
        except OSError as e:
            return [], [StageError('read', path, e.strerror or str(e))]

        items = [item]
        for stage in self.stages:
            next_items: list[FileItem] = []
            for current in items:
                if not stage.accepts(current):
                    next_items.append(current)
                    continue
                outcome = self.apply_stage(stage, current)
                if not outcome.ok:
                    assert outcome.error is not None
                    return [], [outcome.error]
                next_items.extend(outcome.items)
            items = next_items
        return items, []

    def resolve_outputs(self, produced: Sequence[FileItem]) -> tuple[list[FileItem], list[StageError]]:
        """
        Pick one item per output path. Identical outputs are written once, and
        a bundle replaces a plain file of the same name; any other clash is an
        error, and the first item in input order is kept.
        """
        chosen: dict[PurePosixPath, FileItem] = {}
        errors = []
        for item in produced:
            current = chosen.get(item.relative)
            if current is None:
                chosen[item.relative] = item
            elif current.contents == item.contents:
                continue
            elif item.bundled != current.bundled:
                chosen[item.relative] = item if item.bundled else current
            else:
                errors.append(StageError(
                    'write',
                    self.output_dir / item.relative,
                    f'written by both {current.label} and {item.label}',
                ))
        return list(chosen.values()), errors

    def write_item(self, item: FileItem) -> tuple[OutputFile | None, StageError | None]:
        target = self.output_dir / item.relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(item.contents)
        except OSError as e:
            return None, StageError('write', target, e.strerror or str(e))
        return OutputFile(target, len(item.contents)), None

    def apply_stage(self, stage: Stage, item: FileItem) -> TransformResult:
        """
        Apply @stage to @item, consulting the cache first when there is one.
        """
        if not (self.cache and stage.cacheable):
            return stage.apply(item)

        key = self.cache.make_key(stage.stage_id, self.cache_key(stage, item), self._config_hashes[id(stage)])
        cached = self.cache.lookup(key)
        if cached is not None:
            return TransformResult([c.derive(source=item.source) for c in cached])

        outcome = stage.apply(item)
        if outcome.ok:
            self.cache.store(key, outcome.items)
        return outcome


def pipeline_action(pipeline: Pipeline) -> Callable[..., PipelineResult]:
    """
    Wrap @pipeline as a task action.
    """
    def run_pipeline(_orchestrator: t.Any) -> PipelineResult:
        return pipeline.run()
    run_pipeline.__name__ = f'run_{pipeline.name}'
    return run_pipeline
