import datetime as dt
import logging

import pytest

from profile_reaper.profile_engine import (
    TICKS_PER_DAY,
    DeleteOutcome,
    FolderDeleteResult,
    FolderRecord,
    NormalizedProfileRecord,
    RawProfileEntry,
    RepairError,
    ResolutionError,
    StoreQueryError,
    datetime_to_instant,
)

DAY = TICKS_PER_DAY
T0 = datetime_to_instant(dt.datetime(2024, 3, 1, 9, 30, tzinfo=dt.timezone.utc))
USERS_ROOT = "C:\\Users"


def raw_entry(key, path="", load=0, unload=0):
    return RawProfileEntry(
        key_name=key,
        image_path=path,
        load_high=load >> 32,
        load_low=load & 0xFFFFFFFF,
        unload_high=unload >> 32,
        unload_low=unload & 0xFFFFFFFF,
    )


def record(sid, path="", load=0, unload=0, name=None):
    return NormalizedProfileRecord(
        sid=sid,
        friendly_name=name,
        image_path=path,
        load_instant=load,
        unload_instant=unload,
    )


class FakeDirectory:
    def __init__(self, entries, names=None):
        self.entries = list(entries)
        self.names = dict(names or {})

    def list_profiles(self):
        return list(self.entries)

    def resolve_name(self, sid):
        if sid not in self.names:
            raise ResolutionError(sid)
        return self.names[sid]


class FakeStore:
    def __init__(self, loaded=(), failing=(), query_errors=(), repair_errors=()):
        self.loaded = set(loaded)
        self.failing = set(failing)
        self.query_errors = set(query_errors)
        self.repair_errors = set(repair_errors)
        self.queries = []
        self.delete_calls = []
        self.deleted = []
        self.repaired = []

    def is_loaded(self, sid):
        self.queries.append(sid)
        if sid in self.query_errors:
            raise StoreQueryError(f"{sid}: access denied")
        return sid in self.loaded

    def delete(self, sid):
        self.delete_calls.append(sid)
        if sid in self.failing:
            return DeleteOutcome(success=False, reason="The process cannot access the file")
        if sid in self.deleted:
            return DeleteOutcome(success=True, already_absent=True)
        self.deleted.append(sid)
        return DeleteOutcome(success=True)

    def repair(self, sid, image_path):
        if sid in self.repair_errors:
            raise RepairError(f"{sid}: registry is read-only")
        self.repaired.append((sid, image_path))


class FakeFilesystem:
    def __init__(self, folders=(), root=USERS_ROOT, partial=()):
        self.root = root
        self.folders = list(folders)
        self.partial = set(partial)
        self.removed = []

    def list_directories(self, path):
        return [FolderRecord(name=n, path=f"{path}\\{n}") for n in self.folders]

    def exists(self, path):
        return path == self.root

    def delete_recursive(self, path):
        if path in self.partial:
            return FolderDeleteResult(path=path, removed=3, failed=2, errors=["ntuser.dat: in use"])
        self.removed.append(path)
        return FolderDeleteResult(path=path, removed=5)

    def directory_size_report(self, path):
        return "1.00 MB"


@pytest.fixture
def logger():
    return logging.getLogger("profile_reaper.tests")
