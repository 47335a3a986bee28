"""Sync engine for davsync - live mirroring and restore."""

from .debounce import DebounceQueue, EventKind
from .engine import EngineState, SyncEngine
from .ignore import IgnoreFilter
from .mapper import PathMapper
from .operations import (
    DeletionPropagator,
    RemoteDirectoryEnsurer,
    UploadPipeline,
    UploadResult,
)
from .restore import RestoreDownloader, RestoreResult, RestoreTask
from .scanner import DirectoryScanner, LocalFile
from .state import HashCache, RestoreStats, SyncStats
from .watcher import ChangeWatcher, FileEvent

__all__ = [
    "SyncEngine",
    "EngineState",
    "DebounceQueue",
    "EventKind",
    "IgnoreFilter",
    "PathMapper",
    "RemoteDirectoryEnsurer",
    "UploadPipeline",
    "UploadResult",
    "DeletionPropagator",
    "RestoreDownloader",
    "RestoreResult",
    "RestoreTask",
    "DirectoryScanner",
    "LocalFile",
    "HashCache",
    "SyncStats",
    "RestoreStats",
    "ChangeWatcher",
    "FileEvent",
]
