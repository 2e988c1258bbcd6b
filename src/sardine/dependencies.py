"""
Checks for the optional third-party packages stages are built on.
"""
from __future__ import annotations

import abc
import importlib


class Dependency(abc.ABC):
    """
    A base class for trackable, evaluable dependencies.
    """

    @property
    @abc.abstractmethod
    def satisfied(self) -> bool:
        """
        A bool indicating whether this dependency is met.
        """

    @property
    @abc.abstractmethod
    def install_hint(self) -> str:
        """
        A string giving help on how to install this dependency.
        """

    def __repr__(self):
        return f'{self.__class__.__name__}({self}, satisfied={self.satisfied})'


class PipDependency(Dependency):
    """
    A Dependency on a pip-installable package. @check_name is the import name
    when it differs from the distribution @name.
    """
    def __init__(self,
                 name: str,
                 source: str | None = None,
                 check_name: str | None = None):
        self.name = name
        self.source = source or name
        self.check_name = check_name or name

    def __str__(self):
        return self.name

    def __eq__(self, other: object):
        return isinstance(other, PipDependency) and other.check_name == self.check_name

    def __hash__(self):
        return hash(('pip', self.check_name))

    @property
    def satisfied(self):
        """
        A bool indicating whether this dependency is met.
        """
        try:
            importlib.import_module(self.check_name)
        except ImportError:
            return False
        return True

    @property
    def install_hint(self):
        """
        A string giving help on how to install this dependency.
        """
        return f'pip install {self.source}'
