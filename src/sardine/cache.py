"""
Content-addressed cache of stage outputs.

Entries are keyed by the stage identifier, a hash of the input (its relative
path and contents) and a hash of the stage's configuration, so a hit is always
safe to reuse and the whole cache can be deleted at any time.
"""
from __future__ import annotations

import hashlib
import json
import threading
import typing as t
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path, PurePosixPath

from .pretty_utils import print_with_style

if t.TYPE_CHECKING:
    from collections.abc import Sequence
    from .core import FileItem, Stage


INDEX_NAME = 'index.json'
BLOB_DIR = 'blobs'


def checksum(data: bytes, hashname: str = 'sha1'):
    """
    Calculate a hex digest for @data.
    """
    return hashlib.new(hashname, data).hexdigest()


def config_hash(stage: Stage):
    """
    Hash a stage's configuration, as reported by `Stage.config()`.
    """
    payload = json.dumps(stage.config(), sort_keys=True, default=str)
    return checksum(payload.encode('utf-8'))


def content_key(stage: Stage, item: FileItem):
    """
    Default cache key function: the stage sees an item's relative path as well
    as its contents, so both go into the key.
    """
    return checksum(item.relative.as_posix().encode('utf-8') + b'\0' + item.contents)


def _sardine_version():
    try:
        return version('sardine')
    except PackageNotFoundError:
        return 'unknown'


class CachedOutput(t.NamedTuple):
    relative: str
    digest: str
    meta: dict


class TransformCache:
    """
    Thread-safe store of stage outputs. With a @directory the cache survives
    between runs: an index of entries is written as JSON and output contents
    are stored as blobs named after their checksums. Without one it only
    lives as long as the process.
    """
    encoding = 'utf-8'
    newline = '\n'

    def __init__(self, directory: Path | None = None):
        self.directory = directory
        self.parameters = {'sardine_version': _sardine_version()}
        self.hits = 0
        self.misses = 0
        self._lock = threading.Lock()
        self._entries: dict[str, list[CachedOutput]] = {}
        self._blobs: dict[str, bytes] = {}
        self._loaded = directory is None
        self._dirty = False

    def __len__(self):
        with self._lock:
            self._ensure_loaded()
            return len(self._entries)

    @staticmethod
    def make_key(stage_id: str, input_hash: str, stage_config_hash: str):
        return f'{stage_id}:{input_hash}:{stage_config_hash}'

    def _ensure_loaded(self):
        if self._loaded:
            return
        self._loaded = True
        assert self.directory is not None
        index = self.directory / INDEX_NAME
        if not index.exists():
            return
        try:
            data = json.loads(index.read_text(self.encoding))
        except ValueError:
            print_with_style(f'Ignoring unreadable cache index {index}', style='yellow')
            return
        if data.get('parameters') != self.parameters:
            # Written by another version; outputs may differ.
            return
        self._entries = {
            key: [CachedOutput(*output) for output in outputs]
            for key, outputs in data['entries'].items()
        }

    def _read_blob(self, digest: str) -> bytes | None:
        if digest in self._blobs:
            return self._blobs[digest]
        if self.directory is None:
            return None
        blob = self.directory / BLOB_DIR / digest
        if not blob.exists():
            return None
        return blob.read_bytes()

    def lookup(self, key: str) -> list[FileItem] | None:
        """
        Return copies of the items stored under @key, or None on a miss. An
        entry whose blobs have gone missing counts as a miss.
        """
        from .core import FileItem

        with self._lock:
            self._ensure_loaded()
            outputs = self._entries.get(key)
            if outputs is None:
                self.misses += 1
                return None
            items = []
            for output in outputs:
                contents = self._read_blob(output.digest)
                if contents is None:
                    self.misses += 1
                    return None
                items.append(FileItem(PurePosixPath(output.relative), contents, meta=dict(output.meta)))
            self.hits += 1
            return items

    def store(self, key: str, items: Sequence[FileItem]):
        """
        Remember @items as the output for @key. Concurrent stores for the same
        key simply overwrite each other.
        """
        outputs = []
        blobs = {}
        for item in items:
            digest = checksum(item.contents)
            blobs[digest] = item.contents
            meta = {k: v for k, v in item.meta.items() if _jsonable(v)}
            outputs.append(CachedOutput(item.relative.as_posix(), digest, meta))
        with self._lock:
            self._ensure_loaded()
            self._entries[key] = outputs
            self._blobs.update(blobs)
            self._dirty = True

    def flush(self):
        """
        Write new blobs and the index to the cache directory, if there is one
        and anything changed.
        """
        if self.directory is None:
            return
        with self._lock:
            if not self._dirty:
                return
            blob_dir = self.directory / BLOB_DIR
            blob_dir.mkdir(parents=True, exist_ok=True)
            for digest, contents in self._blobs.items():
                blob = blob_dir / digest
                if not blob.exists():
                    blob.write_bytes(contents)
            data = {
                'parameters': self.parameters,
                'entries': {key: [list(o) for o in outputs] for key, outputs in self._entries.items()},
            }
            with (self.directory / INDEX_NAME).open('w', encoding=self.encoding, newline=self.newline) as file:
                json.dump(data, file, indent=2)
            self._blobs.clear()
            self._dirty = False


def _jsonable(value: t.Any):
    try:
        json.dumps(value)
    except TypeError:
        return False
    return True
