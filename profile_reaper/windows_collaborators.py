"""Windows implementations of the profile directory, profile store and filesystem.

Registry access goes through ``winreg``; account lookup and the profile
deletion primitive come from pywin32. Both are imported on first use so the
engine and the filesystem adapter stay importable on any platform.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import sys
from typing import Any

from profile_reaper.profile_engine import (
    DeleteOutcome,
    FilesystemError,
    FolderDeleteResult,
    FolderRecord,
    ProfileReaperError,
    RawProfileEntry,
    RepairError,
    ResolutionError,
    StoreQueryError,
    human_bytes,
)

PROFILE_LIST_KEY = r"SOFTWARE\Microsoft\Windows NT\CurrentVersion\ProfileList"
MAX_RECORDED_ERRORS = 20


def _import_winreg():
    try:
        import winreg
        return winreg
    except Exception as exc:  # pylint: disable=broad-except
        raise ProfileReaperError("winreg is only available on Windows") from exc


def _import_pywin32():
    try:
        import pywintypes
        import win32profile
        import win32security
        return pywintypes, win32profile, win32security
    except Exception as exc:  # pylint: disable=broad-except
        raise ProfileReaperError(
            "pywin32 is required for profile operations. Install with: pip install pywin32"
        ) from exc


def _query_value(winreg: Any, key: Any, name: str, default: Any) -> Any:
    try:
        value, _ = winreg.QueryValueEx(key, name)
        return value
    except FileNotFoundError:
        return default


class RegistryProfileDirectory:
    """Enumerate HKLM ProfileList and resolve sids to account names."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.winreg = _import_winreg()
        self.pywintypes, _, self.win32security = _import_pywin32()

    def list_profiles(self) -> list[RawProfileEntry]:
        winreg = self.winreg
        try:
            root = winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, PROFILE_LIST_KEY, 0, winreg.KEY_READ)
        except OSError as exc:
            raise ProfileReaperError(f"Cannot open ProfileList: {exc}") from exc

        entries: list[RawProfileEntry] = []
        with root:
            index = 0
            while True:
                try:
                    name = winreg.EnumKey(root, index)
                except OSError:
                    break
                index += 1
                try:
                    with winreg.OpenKey(root, name, 0, winreg.KEY_READ) as key:
                        entries.append(
                            RawProfileEntry(
                                key_name=name,
                                image_path=str(_query_value(winreg, key, "ProfileImagePath", "")),
                                load_high=int(_query_value(winreg, key, "LocalProfileLoadTimeHigh", 0)),
                                load_low=int(_query_value(winreg, key, "LocalProfileLoadTimeLow", 0)),
                                unload_high=int(_query_value(winreg, key, "LocalProfileUnloadTimeHigh", 0)),
                                unload_low=int(_query_value(winreg, key, "LocalProfileUnloadTimeLow", 0)),
                            )
                        )
                except OSError as exc:
                    self.logger.warning("profile_key_unreadable key=%s err=%s", name, exc)

        self.logger.debug("profile_list_enumerated entries=%s", len(entries))
        return entries

    def resolve_name(self, sid: str) -> str:
        ws = self.win32security
        try:
            name, domain, _ = ws.LookupAccountSid(None, ws.ConvertStringSidToSid(sid))
        except self.pywintypes.error as exc:
            raise ResolutionError(f"{sid}: {exc.strerror}") from exc
        return f"{domain}\\{name}" if domain else name


class RegistryProfileStore:
    """Loaded-state queries, deletion and registry repair for profiles."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.winreg = _import_winreg()
        self.pywintypes, self.win32profile, _ = _import_pywin32()

    def is_loaded(self, sid: str) -> bool:
        # A loaded profile has its hive mounted under HKEY_USERS\<sid>.
        winreg = self.winreg
        try:
            with winreg.OpenKey(winreg.HKEY_USERS, sid, 0, winreg.KEY_READ):
                return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StoreQueryError(f"{sid}: {exc}") from exc

    def _has_profile_key(self, sid: str) -> bool:
        winreg = self.winreg
        try:
            with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, f"{PROFILE_LIST_KEY}\\{sid}", 0, winreg.KEY_READ):
                return True
        except FileNotFoundError:
            return False

    def delete(self, sid: str) -> DeleteOutcome:
        try:
            if not self._has_profile_key(sid):
                return DeleteOutcome(success=True, already_absent=True)
        except OSError as exc:
            return DeleteOutcome(success=False, reason=str(exc))

        try:
            self.win32profile.DeleteProfile(sid)
        except self.pywintypes.error as exc:
            return DeleteOutcome(success=False, reason=f"{exc.strerror} (code {exc.winerror})")
        return DeleteOutcome(success=True)

    def repair(self, sid: str, image_path: str) -> None:
        if not image_path:
            raise RepairError(f"{sid}: no image path to restore")
        winreg = self.winreg
        try:
            with winreg.CreateKeyEx(
                winreg.HKEY_LOCAL_MACHINE, f"{PROFILE_LIST_KEY}\\{sid}", 0, winreg.KEY_SET_VALUE
            ) as key:
                winreg.SetValueEx(key, "Flags", 0, winreg.REG_DWORD, 0)
                winreg.SetValueEx(key, "State", 0, winreg.REG_DWORD, 0)
                winreg.SetValueEx(key, "ProfileImagePath", 0, winreg.REG_EXPAND_SZ, image_path)
        except OSError as exc:
            raise RepairError(f"{sid}: {exc}") from exc


def _is_link(path: str) -> bool:
    """True for symlinks and for Windows junctions and other reparse points."""
    try:
        st = os.lstat(path)
    except OSError:
        return False
    if stat.S_ISLNK(st.st_mode):
        return True
    return bool(getattr(st, "st_file_attributes", 0) & stat.FILE_ATTRIBUTE_REPARSE_POINT)


def _count_items(path: str) -> int:
    if _is_link(path) or not os.path.isdir(path):
        return 1
    count = 1
    try:
        with os.scandir(path) as it:
            children = [entry.path for entry in it]
    except OSError:
        return count
    for child in children:
        count += _count_items(child)
    return count


class LocalFilesystem:
    """Directory listing and best-effort removal under the users root."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger("profile_reaper")

    def list_directories(self, path: str) -> list[FolderRecord]:
        out = []
        try:
            with os.scandir(path) as it:
                for entry in it:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            out.append(FolderRecord(name=entry.name, path=entry.path))
                    except OSError as exc:
                        self.logger.debug("folder_stat_failed path=%s err=%s", entry.path, exc)
        except OSError as exc:
            raise FilesystemError(str(exc)) from exc
        return out

    def exists(self, path: str) -> bool:
        return os.path.isdir(path)

    def delete_recursive(self, path: str) -> FolderDeleteResult:
        result = FolderDeleteResult(path=path)
        if not os.path.lexists(path):
            return result

        failed: set[str] = set()

        def on_rm_error(func, target, exc) -> None:
            if isinstance(exc, FileNotFoundError):
                return
            if not _is_link(target) and not os.path.isdir(target):
                # Clear the read-only bit and retry once.
                try:
                    os.chmod(target, stat.S_IWRITE)
                    func(target)
                    return
                except FileNotFoundError:
                    return
                except OSError as retry_exc:
                    exc = retry_exc
            if target not in failed:
                failed.add(target)
                if len(result.errors) < MAX_RECORDED_ERRORS:
                    result.errors.append(f"{target}: {exc}")

        total = _count_items(path)
        if _is_link(path):
            # Links and junctions are removed themselves, never their targets.
            try:
                os.unlink(path)
            except OSError as exc:
                on_rm_error(os.unlink, path, exc)
        elif sys.version_info >= (3, 12):
            shutil.rmtree(path, onexc=on_rm_error)
        else:
            shutil.rmtree(path, onerror=lambda func, target, info: on_rm_error(func, target, info[1]))

        result.failed = len(failed)
        result.removed = max(total - result.failed, 0)
        return result

    def directory_size_report(self, path: str) -> str:
        total = 0
        unreadable = 0
        for dirpath, _, filenames in os.walk(path):
            for name in filenames:
                try:
                    total += os.lstat(os.path.join(dirpath, name)).st_size
                except OSError:
                    unreadable += 1
        text = human_bytes(total)
        if unreadable:
            text += f", {unreadable} unreadable"
        return text


def build_windows_collaborators(
    logger: logging.Logger,
) -> tuple[RegistryProfileDirectory, RegistryProfileStore, LocalFilesystem]:
    if sys.platform != "win32":
        raise ProfileReaperError("Profile inventory requires Windows (registry ProfileList)")
    return RegistryProfileDirectory(logger), RegistryProfileStore(logger), LocalFilesystem(logger)
