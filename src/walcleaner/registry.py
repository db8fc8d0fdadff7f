"""Instance registry interface consumed by the cleaner."""

import os
import threading
from typing import Dict, Mapping, Protocol, Union, runtime_checkable


@runtime_checkable
class ManagedInstance(Protocol):
    """A live ingestion instance that owns one storage directory."""

    def storage_directory(self) -> Union[str, os.PathLike]: ...


@runtime_checkable
class InstanceRegistry(Protocol):
    """Source of the currently running instances."""

    def list_instances(self) -> Mapping[str, ManagedInstance]: ...


class StaticInstance:
    """ManagedInstance backed by a fixed path."""

    def __init__(self, name: str, storage: Union[str, os.PathLike]):
        self.name = name
        self._storage = os.fspath(storage)

    def storage_directory(self) -> str:
        return self._storage

    def __repr__(self) -> str:
        return f"StaticInstance({self.name!r}, {self._storage!r})"


class StaticInstanceRegistry:
    """
    In-memory registry.

    Used by the CLI, where ownership comes from ``--managed`` flags, and by
    tests. ``list_instances`` hands out a copy, so callers get a snapshot that
    later add/remove calls do not affect.
    """

    def __init__(self, instances: Mapping[str, ManagedInstance] | None = None):
        self._lock = threading.Lock()
        self._instances: Dict[str, ManagedInstance] = dict(instances or {})

    @classmethod
    def from_paths(cls, paths) -> "StaticInstanceRegistry":
        """Build a registry with one instance per storage path, keyed by the path."""
        registry = cls()
        for path in paths:
            registry.add(StaticInstance(os.fspath(path), path))
        return registry

    def add(self, instance: StaticInstance) -> None:
        with self._lock:
            self._instances[instance.name] = instance

    def remove(self, name: str) -> None:
        with self._lock:
            self._instances.pop(name, None)

    def list_instances(self) -> Dict[str, ManagedInstance]:
        with self._lock:
            return dict(self._instances)
