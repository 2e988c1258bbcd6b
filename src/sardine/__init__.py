"""
Sardine is a task-driven asset build for static sites: it compiles templates
and stylesheets, bundles and minifies them into a distributable tree, and
serves either version with live reload.
"""
from .cache import TransformCache
from .core import FileItem, Pipeline, PipelineResult, Stage, StageRegistry, TransformResult
from .css import AutoprefixStage, SassStage
from .dependencies import Dependency, PipDependency
from .errors import (
    BuildError, ConfigError, CycleDetected, DependencyFailed, ServerBindError, StageError,
    StageFailed, StageUnavailableError, UnknownTask,
)
from .images import ImageOptimizerStage
from .jinja import JinjaTemplateStage
from .minify import BundleStage, CSSMinifierStage, HTMLMinifierStage, JSMinifierStage
from .paths import GlobSet
from .recipe import BuildSettings, InputBuildSettings, SiteRecipe, build_graph, resolve_settings
from .server import ServerSession
from .simple import CopyStage, RenameStage
from .tasks import BuildReport, Orchestrator, Task, TaskGraph, TaskState
from .watcher import Watcher, WatchBinding
