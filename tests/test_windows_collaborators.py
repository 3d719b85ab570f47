from types import SimpleNamespace

import pytest

from profile_reaper import windows_collaborators
from profile_reaper.profile_engine import RepairError, ResolutionError, StoreQueryError
from profile_reaper.windows_collaborators import (
    PROFILE_LIST_KEY,
    RegistryProfileDirectory,
    RegistryProfileStore,
)

ALICE = "S-1-5-21-1-2-3-1001"
BOB = "S-1-5-21-1-2-3-1002"


class FakeKey:
    def __init__(self, hive, path):
        self.hive = hive
        self.path = path

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeWinreg:
    HKEY_LOCAL_MACHINE = "HKLM"
    HKEY_USERS = "HKU"
    KEY_READ = 0x20019
    KEY_SET_VALUE = 0x0002
    REG_DWORD = 4
    REG_EXPAND_SZ = 2

    def __init__(self, keys=None, denied=()):
        self.keys = {loc: dict(values) for loc, values in (keys or {}).items()}
        self.denied = set(denied)

    def _locate(self, parent, sub):
        if isinstance(parent, FakeKey):
            return parent.hive, f"{parent.path}\\{sub}"
        return parent, sub

    def OpenKey(self, parent, sub, reserved=0, access=0):
        loc = self._locate(parent, sub)
        if loc in self.denied:
            raise PermissionError(13, "Access is denied")
        if loc not in self.keys:
            raise FileNotFoundError(2, "The system cannot find the file specified")
        return FakeKey(*loc)

    def CreateKeyEx(self, parent, sub, reserved=0, access=0):
        loc = self._locate(parent, sub)
        if loc in self.denied:
            raise PermissionError(13, "Access is denied")
        self.keys.setdefault(loc, {})
        return FakeKey(*loc)

    def EnumKey(self, key, index):
        prefix = key.path + "\\"
        children = sorted(
            path[len(prefix):]
            for hive, path in self.keys
            if hive == key.hive and path.startswith(prefix) and "\\" not in path[len(prefix):]
        )
        if index >= len(children):
            raise OSError(259, "No more data is available")
        return children[index]

    def QueryValueEx(self, key, name):
        values = self.keys[(key.hive, key.path)]
        if name not in values:
            raise FileNotFoundError(2, "The system cannot find the file specified")
        return values[name], self.REG_DWORD

    def SetValueEx(self, key, name, reserved, kind, value):
        self.keys[(key.hive, key.path)][name] = (kind, value)


class FakePyWinError(Exception):
    def __init__(self, winerror, funcname, strerror):
        super().__init__(winerror, funcname, strerror)
        self.winerror = winerror
        self.funcname = funcname
        self.strerror = strerror


class FakeWin32Profile:
    def __init__(self, busy=()):
        self.busy = set(busy)
        self.deleted = []

    def DeleteProfile(self, sid):
        if sid in self.busy:
            raise FakePyWinError(32, "DeleteProfile", "The process cannot access the file")
        self.deleted.append(sid)


def lookup_account_sid(system, sid):
    if sid == ALICE:
        return "alice", "CORP", 1
    raise FakePyWinError(1332, "LookupAccountSid", "No mapping between account names and security IDs was done")


def install(monkeypatch, winreg, profile=None):
    profile = profile or FakeWin32Profile()
    security = SimpleNamespace(ConvertStringSidToSid=lambda s: s, LookupAccountSid=lookup_account_sid)
    monkeypatch.setattr(windows_collaborators, "_import_winreg", lambda: winreg)
    monkeypatch.setattr(
        windows_collaborators,
        "_import_pywin32",
        lambda: (SimpleNamespace(error=FakePyWinError), profile, security),
    )
    return profile


def profile_key(sid):
    return ("HKLM", f"{PROFILE_LIST_KEY}\\{sid}")


def test_list_profiles_reads_load_and_unload_halves(monkeypatch, logger):
    winreg = FakeWinreg(
        {
            ("HKLM", PROFILE_LIST_KEY): {},
            profile_key("S-1-5-18"): {"ProfileImagePath": "%systemroot%\\system32\\config\\systemprofile"},
            profile_key(ALICE): {
                "ProfileImagePath": "C:\\Users\\alice",
                "LocalProfileLoadTimeHigh": 31000000,
                "LocalProfileLoadTimeLow": 12,
                "LocalProfileUnloadTimeHigh": 31000001,
                "LocalProfileUnloadTimeLow": 34,
            },
        }
    )
    install(monkeypatch, winreg)
    entries = RegistryProfileDirectory(logger).list_profiles()

    assert [e.key_name for e in entries] == ["S-1-5-18", ALICE]
    assert entries[0].load_high == 0 and entries[0].unload_low == 0
    alice = entries[1]
    assert alice.image_path == "C:\\Users\\alice"
    assert (alice.load_high, alice.load_low) == (31000000, 12)
    assert (alice.unload_high, alice.unload_low) == (31000001, 34)


def test_resolve_name(monkeypatch, logger):
    install(monkeypatch, FakeWinreg())
    directory = RegistryProfileDirectory(logger)
    assert directory.resolve_name(ALICE) == "CORP\\alice"
    with pytest.raises(ResolutionError):
        directory.resolve_name(BOB)


def test_is_loaded_checks_hive_under_hkey_users(monkeypatch, logger):
    install(monkeypatch, FakeWinreg({("HKU", ALICE): {}}, denied={("HKU", "S-1-5-21-1-2-3-1003")}))
    store = RegistryProfileStore(logger)
    assert store.is_loaded(ALICE) is True
    assert store.is_loaded(BOB) is False
    with pytest.raises(StoreQueryError):
        store.is_loaded("S-1-5-21-1-2-3-1003")


def test_delete_calls_delete_profile(monkeypatch, logger):
    profile = install(monkeypatch, FakeWinreg({profile_key(ALICE): {}}))
    outcome = RegistryProfileStore(logger).delete(ALICE)
    assert outcome.success and not outcome.already_absent
    assert profile.deleted == [ALICE]


def test_delete_of_absent_profile_is_success(monkeypatch, logger):
    profile = install(monkeypatch, FakeWinreg())
    outcome = RegistryProfileStore(logger).delete(ALICE)
    assert outcome.success
    assert outcome.already_absent
    assert profile.deleted == []


def test_delete_failure_maps_to_outcome(monkeypatch, logger):
    install(monkeypatch, FakeWinreg({profile_key(ALICE): {}}), FakeWin32Profile(busy={ALICE}))
    outcome = RegistryProfileStore(logger).delete(ALICE)
    assert not outcome.success
    assert "code 32" in outcome.reason
    assert "cannot access" in outcome.reason


def test_delete_with_unreadable_profile_key(monkeypatch, logger):
    profile = install(monkeypatch, FakeWinreg(denied={profile_key(ALICE)}))
    outcome = RegistryProfileStore(logger).delete(ALICE)
    assert not outcome.success
    assert profile.deleted == []


def test_repair_restores_flags_state_and_path(monkeypatch, logger):
    winreg = FakeWinreg()
    install(monkeypatch, winreg)
    RegistryProfileStore(logger).repair(ALICE, "C:\\Users\\alice")
    assert winreg.keys[profile_key(ALICE)] == {
        "Flags": (FakeWinreg.REG_DWORD, 0),
        "State": (FakeWinreg.REG_DWORD, 0),
        "ProfileImagePath": (FakeWinreg.REG_EXPAND_SZ, "C:\\Users\\alice"),
    }


def test_repair_errors(monkeypatch, logger):
    install(monkeypatch, FakeWinreg(denied={profile_key(BOB)}))
    store = RegistryProfileStore(logger)
    with pytest.raises(RepairError):
        store.repair(ALICE, "")
    with pytest.raises(RepairError):
        store.repair(BOB, "C:\\Users\\bob")
