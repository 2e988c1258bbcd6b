"""
Simple Stages and a base class for Stages that work on text.
"""
from __future__ import annotations

import abc
from pathlib import PurePosixPath

from .core import FileItem, Stage


class CopyStage(Stage):
    """
    A Stage which passes files through unchanged.
    """
    stage_id = 'copy'

    def transform(self, item: FileItem):
        return item


class RenameStage(Stage):
    """
    A Stage giving every file the fixed name @name, keeping its directory.
    Used to emit compiled stylesheets under a single bundle filename.
    """
    stage_id = 'rename'

    def __init__(self, name: str):
        if '/' in name:
            raise ValueError(f'RenameStage takes a file name, not a path: {name!r}')
        self.name = name

    def transform(self, item: FileItem):
        return item.derive(relative=item.relative.with_name(self.name))


class BaseTextStage(Stage):
    """
    A base class for Stages which transform a file's decoded text.
    """
    encoding = 'utf-8'

    @abc.abstractmethod
    def transform_text(self, text: str, item: FileItem) -> str:
        ...

    def rename(self, relative: PurePosixPath) -> PurePosixPath:
        """
        Overridable hook for Stages which change the output name.
        """
        return relative

    def transform(self, item: FileItem):
        text = self.transform_text(item.text(self.encoding), item)
        return item.derive(
            contents=text.encode(self.encoding),
            relative=self.rename(item.relative),
        )
