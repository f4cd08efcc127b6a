# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Incremental build and test execution for multi-project .NET repositories."""

from .cache import CacheStoreError, ContentCache
from .config import Config, ConfigurationError, DependencyCycleError
from .engine import Engine
from .invoker import DotnetInvoker, InvocationError, InvocationResult, Invoker
from .models import (
    BatchPlan,
    CacheEntry,
    FilterResult,
    JobResult,
    Project,
    RunOptions,
    RunSummary,
    Solution,
    SolutionPolicy,
)
from .project_graph import ProjectGraph, discover
from .scheduler import Scheduler
from .session import SessionContext
from .solution_grouper import plan_batches
from .testfilter import TestSelector
from .vcs import GitRepository, UnknownReferenceError, find_root
from .watcher import ChangeWatcher

__version__ = "0.1.0"

__all__ = [
    "Engine",
    "Config",
    "ConfigurationError",
    "DependencyCycleError",
    "ContentCache",
    "CacheStoreError",
    "CacheEntry",
    "ProjectGraph",
    "discover",
    "plan_batches",
    "Scheduler",
    "SessionContext",
    "TestSelector",
    "Invoker",
    "DotnetInvoker",
    "InvocationError",
    "InvocationResult",
    "BatchPlan",
    "FilterResult",
    "JobResult",
    "Project",
    "RunOptions",
    "RunSummary",
    "Solution",
    "SolutionPolicy",
    "GitRepository",
    "UnknownReferenceError",
    "find_root",
    "ChangeWatcher",
]
