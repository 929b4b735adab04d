"""Source store collaborators."""

from scheduling_engine.stores.base import SourceStore
from scheduling_engine.stores.http import HttpSourceStore
from scheduling_engine.stores.json_file import JsonFileSourceStore
from scheduling_engine.stores.memory import InMemorySourceStore

__all__ = [
    "HttpSourceStore",
    "InMemorySourceStore",
    "JsonFileSourceStore",
    "SourceStore",
]
