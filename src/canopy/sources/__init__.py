"""Data-source strategies behind the hierarchical source contract."""

from canopy.sources.backend import BackendDataSource, CallbackDataSource
from canopy.sources.base import HierarchicalDataSource, HierarchicalQuery, QueryOptions
from canopy.sources.filesystem import FileSystemDataSource, FsEntry
from canopy.sources.memory import TreeData, TreeDataSource

__all__ = [
    "BackendDataSource",
    "CallbackDataSource",
    "FileSystemDataSource",
    "FsEntry",
    "HierarchicalDataSource",
    "HierarchicalQuery",
    "QueryOptions",
    "TreeData",
    "TreeDataSource",
]
