#!/usr/bin/env python3
"""Profile Reaper: stale Windows user profile classification and cleanup.

Inventories the ProfileList records, reconciles them with the folders under
the users root, and applies a retention policy with a read-only default:
- Load/unload FILETIME pairs as the authoritative "last used" signal
- Ordered, short-circuiting classification rules
- Unclean-shutdown detection (unload recorded before load)
- Oldest-first deletion with optional registry repair on failure
- Orphan folder detection with best-effort, counted removal

The OS-facing pieces (registry, profile deletion, filesystem) are injected as
collaborators; see windows_collaborators.py for the real implementations.
"""

from __future__ import annotations

import argparse
import dataclasses
import datetime as dt
import json
import logging
import os
import re
import sys
import tempfile
from pathlib import Path, PureWindowsPath
from typing import Any, Callable, Iterable, Protocol, Sequence

# ------------------------------- Constants ---------------------------------- #

APP_NAME = "profile_reaper"
DEFAULT_LOG_FILE = Path(
    os.getenv("PROFILE_REAPER_LOG", str(Path.home() / ".local" / "share" / APP_NAME / "actions.log"))
)
DEFAULT_USERS_ROOT = os.getenv(
    "PROFILE_REAPER_USERS_ROOT",
    os.environ.get("SystemDrive", "C:") + "\\Users",
)

DEFAULT_RETENTION_DAYS = 90
MAX_RETENTION_DAYS = 9999

# FILETIME: 100 ns ticks since 1601-01-01 UTC.
FILETIME_EPOCH = dt.datetime(1601, 1, 1, tzinfo=dt.timezone.utc)
TICKS_PER_MICROSECOND = 10
TICKS_PER_DAY = 86400 * 1_000_000 * TICKS_PER_MICROSECOND
UINT32_MASK = 0xFFFFFFFF

NT_AUTHORITY = 5

# Sids that are never offered for eviction, on top of the system accounts.
DEFAULT_SKIPLIST: frozenset[str] = frozenset()

DEFAULT_FOLDER_EXCLUSIONS = frozenset(
    {
        "",
        "public",
        "default",
        "default user",
        "all users",
    }
)

REPAIR_VALUE_NAMES = ("Flags", "State", "ProfileImagePath")

# Dispositions
ADMIN_EXEMPT = "AdminExempt"
SKIPLIST_EXEMPT = "SkiplistExempt"
LOADED_EXEMPT = "LoadedExempt"
NO_IMAGE_PATH = "NoImagePath"
NO_LOAD_TIME = "NoLoadTime"
UNCLEAN_SHUTDOWN = "UncleanShutdown"
PRESERVED = "Preserved"
EVICTION_CANDIDATE = "EvictionCandidate"

EVICTABLE_DISPOSITIONS = frozenset({UNCLEAN_SHUTDOWN, EVICTION_CANDIDATE})
EXEMPT_DISPOSITIONS = frozenset({ADMIN_EXEMPT, SKIPLIST_EXEMPT, LOADED_EXEMPT})
INFORMATIONAL_DISPOSITIONS = frozenset({NO_IMAGE_PATH, NO_LOAD_TIME})

# Folder verdicts
FOLDER_EXCLUDED = "Excluded"
FOLDER_OWNED = "Owned"
FOLDER_ORPHAN = "Orphan"


# -------------------------------- Errors ------------------------------------ #


class ProfileReaperError(Exception):
    """Base error for profile inventory and cleanup."""


class ConfigError(ProfileReaperError, ValueError):
    """Invalid run configuration; raised before any processing."""


class ProfileParseError(ProfileReaperError):
    """A ProfileList key is not a valid security identifier."""


class ResolutionError(ProfileReaperError):
    """A security identifier could not be mapped to an account name."""


class StoreQueryError(ProfileReaperError):
    """The loaded-state query for a profile failed."""


class DeleteError(ProfileReaperError):
    """The profile deletion primitive failed."""


class RepairError(ProfileReaperError):
    """Re-creating the registry values of a profile failed."""


class FilesystemError(ProfileReaperError):
    """Listing or inspecting the users root failed."""


# ------------------------------- Utilities ---------------------------------- #


def now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def human_bytes(size: int) -> str:
    val = float(max(size, 0))
    for unit in ["B", "KB", "MB", "GB", "TB", "PB"]:
        if val < 1024.0 or unit == "PB":
            if unit == "B":
                return f"{int(val)} {unit}"
            return f"{val:.2f} {unit}"
        val /= 1024.0
    return f"{size} B"


def export_json(path: Path, obj: Any) -> None:
    ensure_parent(path)
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=True), encoding="utf-8")


def setup_logger(log_file: Path = DEFAULT_LOG_FILE, debug: bool = False) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        logger.setLevel(logging.DEBUG if debug else logging.INFO)
        return logger

    chosen = log_file
    try:
        ensure_parent(log_file)
    except OSError:
        chosen = Path(tempfile.gettempdir()) / APP_NAME / "actions.log"
        ensure_parent(chosen)

    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh = logging.FileHandler(chosen, encoding="utf-8")
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    if debug:
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        logger.addHandler(sh)
    return logger


# ------------------------------- Time Model --------------------------------- #


def to_instant(high: int, low: int) -> int:
    """Combine the registry high/low DWORD pair into one FILETIME tick count."""
    return ((int(high) & UINT32_MASK) << 32) | (int(low) & UINT32_MASK)


def datetime_to_instant(value: dt.datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return ((value - FILETIME_EPOCH) // dt.timedelta(microseconds=1)) * TICKS_PER_MICROSECOND


def instant_to_datetime(instant: int) -> dt.datetime:
    return FILETIME_EPOCH + dt.timedelta(microseconds=instant // TICKS_PER_MICROSECOND)


def now_instant() -> int:
    return datetime_to_instant(dt.datetime.now(dt.timezone.utc))


def age_in_days(now: int, instant: int) -> int:
    # ceil((now - instant) / day) on integers
    return max(0, -((instant - now) // TICKS_PER_DAY))


def is_unclean(load: int, unload: int) -> bool:
    """An unload recorded before its load means the session never closed cleanly."""
    return load != 0 and unload < load


def preserve_threshold(now: int, retention_days: int) -> int:
    return now - retention_days * TICKS_PER_DAY


def format_instant(instant: int) -> str:
    if instant == 0:
        return "never"
    try:
        return instant_to_datetime(instant).strftime("%Y-%m-%d %H:%M")
    except OverflowError:
        return "invalid"


# -------------------------- Security Identifiers ---------------------------- #


SID_PATTERN = re.compile(r"^S-1-(\d+)((?:-\d+)+)$", re.IGNORECASE)


@dataclasses.dataclass(frozen=True, slots=True)
class SecurityIdentifier:
    authority: int
    sub_authorities: tuple[int, ...]

    def __str__(self) -> str:
        subs = "".join(f"-{s}" for s in self.sub_authorities)
        return f"S-1-{self.authority}{subs}"


def parse_sid(text: str) -> SecurityIdentifier:
    match = SID_PATTERN.match((text or "").strip())
    if not match:
        raise ProfileParseError(f"Not a security identifier: {text!r}")
    authority = int(match.group(1))
    subs = tuple(int(x) for x in match.group(2).split("-")[1:])
    if authority >= 1 << 48 or any(s > UINT32_MASK for s in subs):
        raise ProfileParseError(f"Security identifier component out of range: {text!r}")
    return SecurityIdentifier(authority=authority, sub_authorities=subs)


def canonical_sid(text: str) -> str:
    return str(parse_sid(text))


def is_system_account(sid: SecurityIdentifier) -> bool:
    """Built-in NT AUTHORITY accounts (S-1-5-18, -19, -20, ...)."""
    return sid.authority == NT_AUTHORITY and len(sid.sub_authorities) == 1


# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(frozen=True, slots=True)
class RawProfileEntry:
    key_name: str
    image_path: str = ""
    load_high: int = 0
    load_low: int = 0
    unload_high: int = 0
    unload_low: int = 0


@dataclasses.dataclass(frozen=True, slots=True)
class NormalizedProfileRecord:
    sid: str
    friendly_name: str | None
    image_path: str
    load_instant: int
    unload_instant: int

    @property
    def folder_name(self) -> str:
        if not self.image_path:
            return ""
        return PureWindowsPath(self.image_path).name


@dataclasses.dataclass(frozen=True, slots=True)
class WorkingSet:
    records: tuple[NormalizedProfileRecord, ...]
    diagnostics: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True, slots=True)
class Disposition:
    kind: str
    effective_load: int
    unclean: bool = False
    note: str = ""

    @property
    def evictable(self) -> bool:
        return self.kind in EVICTABLE_DISPOSITIONS


@dataclasses.dataclass(frozen=True, slots=True)
class ClassifiedProfile:
    record: NormalizedProfileRecord
    disposition: Disposition
    age_days: int


@dataclasses.dataclass(frozen=True, slots=True)
class DeleteOutcome:
    success: bool
    reason: str = ""
    already_absent: bool = False


@dataclasses.dataclass(frozen=True, slots=True)
class FolderRecord:
    name: str
    path: str


@dataclasses.dataclass(frozen=True, slots=True)
class FolderClassification:
    folder: FolderRecord
    verdict: str
    owner_sid: str | None = None


@dataclasses.dataclass(slots=True)
class FolderDeleteResult:
    """Outcome of a best-effort recursive removal."""

    path: str
    removed: int = 0
    failed: int = 0
    errors: list[str] = dataclasses.field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.failed == 0


@dataclasses.dataclass(frozen=True, slots=True)
class ReaperConfig:
    """Immutable options for one run. Everything destructive defaults off."""

    retention_days: int = DEFAULT_RETENTION_DAYS
    include_admin: bool = False
    perform_cleanup: bool = False
    cleanup_and_orphan: bool = False
    treat_unclean_as_old: bool = False
    remove_orphans: bool = False
    attempt_registry_repair: bool = False
    hide_never_loaded: bool = False
    hide_missing_path: bool = False
    verbose: bool = False
    debug: bool = False
    show_size: bool = False
    users_root: str = DEFAULT_USERS_ROOT
    skiplist: frozenset[str] = DEFAULT_SKIPLIST
    extra_folder_exclusions: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if isinstance(self.retention_days, bool) or not isinstance(self.retention_days, int):
            raise ConfigError(f"Retention days must be an integer, got {self.retention_days!r}")
        if not 0 <= self.retention_days <= MAX_RETENTION_DAYS:
            raise ConfigError(
                f"Retention days must be between 0 and {MAX_RETENTION_DAYS}, got {self.retention_days}"
            )

    @property
    def cleanup_enabled(self) -> bool:
        return self.perform_cleanup or self.cleanup_and_orphan

    @property
    def orphan_removal_enabled(self) -> bool:
        return self.remove_orphans or self.cleanup_and_orphan

    @property
    def destructive(self) -> bool:
        return self.cleanup_enabled or self.orphan_removal_enabled

    @classmethod
    def from_namespace(cls, args: argparse.Namespace) -> "ReaperConfig":
        skiplist = set(DEFAULT_SKIPLIST)
        if getattr(args, "skiplist_file", None):
            skiplist.update(load_skiplist(args.skiplist_file))
        return cls(
            retention_days=args.days,
            include_admin=args.include_admin,
            perform_cleanup=args.cleanup,
            cleanup_and_orphan=args.cleanup_and_orphan,
            treat_unclean_as_old=args.dirty,
            remove_orphans=args.orphan,
            attempt_registry_repair=args.repair,
            hide_never_loaded=args.hide_no_load_time,
            hide_missing_path=args.hide_no_path,
            verbose=args.verbose,
            debug=args.debug,
            show_size=args.size,
            users_root=args.users_root,
            skiplist=frozenset(skiplist),
        )


def load_skiplist(path: str) -> frozenset[str]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Skiplist file not found: {path}")
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Skiplist file unreadable: {path}: {exc}") from exc
    if not isinstance(data, list):
        raise ConfigError("Skiplist must be a JSON array of security identifiers")
    try:
        return frozenset(canonical_sid(str(x)) for x in data)
    except ProfileParseError as exc:
        raise ConfigError(f"Invalid skiplist entry: {exc}") from exc


# ----------------------------- Collaborators -------------------------------- #


class ProfileDirectory(Protocol):
    def list_profiles(self) -> list[RawProfileEntry]: ...

    def resolve_name(self, sid: str) -> str: ...


class ProfileStore(Protocol):
    def is_loaded(self, sid: str) -> bool: ...

    def delete(self, sid: str) -> DeleteOutcome: ...

    def repair(self, sid: str, image_path: str) -> None: ...


class Filesystem(Protocol):
    def list_directories(self, path: str) -> list[FolderRecord]: ...

    def exists(self, path: str) -> bool: ...

    def delete_recursive(self, path: str) -> FolderDeleteResult: ...

    def directory_size_report(self, path: str) -> str: ...


# --------------------------- Directory Adapter ------------------------------ #


class ProfileDirectoryAdapter:
    """Turn raw ProfileList entries into an immutable working set."""

    def __init__(self, directory: ProfileDirectory, logger: logging.Logger):
        self.directory = directory
        self.logger = logger

    def load(self) -> WorkingSet:
        records: list[NormalizedProfileRecord] = []
        diagnostics: list[str] = []
        seen: set[str] = set()

        for entry in self.directory.list_profiles():
            try:
                sid = canonical_sid(entry.key_name)
            except ProfileParseError as exc:
                image_path = (entry.image_path or "").strip()
                where = f" (image path {image_path})" if image_path else ""
                diagnostics.append(f"skipped entry {entry.key_name!r}{where}: {exc}")
                self.logger.warning("profile_parse_error key=%s path=%s err=%s", entry.key_name, image_path, exc)
                continue

            if sid in seen:
                diagnostics.append(f"skipped duplicate entry {entry.key_name!r}")
                self.logger.warning("profile_duplicate sid=%s key=%s", sid, entry.key_name)
                continue
            seen.add(sid)

            records.append(
                NormalizedProfileRecord(
                    sid=sid,
                    friendly_name=self._resolve(sid),
                    image_path=(entry.image_path or "").strip(),
                    load_instant=to_instant(entry.load_high, entry.load_low),
                    unload_instant=to_instant(entry.unload_high, entry.unload_low),
                )
            )

        self.logger.info("working_set_built records=%s diagnostics=%s", len(records), len(diagnostics))
        return WorkingSet(records=tuple(records), diagnostics=tuple(diagnostics))

    def _resolve(self, sid: str) -> str | None:
        try:
            return self.directory.resolve_name(sid) or None
        except ResolutionError as exc:
            self.logger.debug("name_resolution_failed sid=%s err=%s", sid, exc)
            return None


# ---------------------------- Classification -------------------------------- #


@dataclasses.dataclass(slots=True)
class _Evaluation:
    record: NormalizedProfileRecord
    config: ReaperConfig
    threshold: int
    store: ProfileStore
    logger: logging.Logger
    effective_load: int
    unclean: bool

    def decide(self, kind: str, note: str = "") -> Disposition:
        return Disposition(kind=kind, effective_load=self.effective_load, unclean=self.unclean, note=note)


def _rule_system_account(ev: _Evaluation) -> Disposition | None:
    if is_system_account(parse_sid(ev.record.sid)):
        return ev.decide(ADMIN_EXEMPT, "system account")
    return None


def _rule_missing_data(ev: _Evaluation) -> Disposition | None:
    if not ev.record.image_path:
        return ev.decide(NO_IMAGE_PATH, "no profile image path")
    if ev.record.load_instant == 0:
        return ev.decide(NO_LOAD_TIME, "never loaded")
    return None


def _rule_unclean_shutdown(ev: _Evaluation) -> Disposition | None:
    if ev.unclean and ev.config.treat_unclean_as_old:
        ev.effective_load = 0
    return None


def _rule_retention(ev: _Evaluation) -> Disposition | None:
    if ev.effective_load >= ev.threshold:
        return ev.decide(PRESERVED, f"used within {ev.config.retention_days} days")
    return None


def _rule_skiplist(ev: _Evaluation) -> Disposition | None:
    if ev.record.sid in ev.config.skiplist:
        return ev.decide(SKIPLIST_EXEMPT, "skiplisted")
    return None


def _rule_loaded(ev: _Evaluation) -> Disposition | None:
    try:
        loaded = ev.store.is_loaded(ev.record.sid)
    except StoreQueryError as exc:
        ev.logger.warning("load_state_unknown sid=%s err=%s", ev.record.sid, exc)
        return ev.decide(LOADED_EXEMPT, "load state unknown, assumed loaded")
    if loaded:
        return ev.decide(LOADED_EXEMPT, "profile is loaded")
    return None


def _rule_evictable(ev: _Evaluation) -> Disposition | None:
    if ev.unclean and ev.config.treat_unclean_as_old:
        return ev.decide(UNCLEAN_SHUTDOWN, "unclean shutdown, treated as oldest")
    return ev.decide(EVICTION_CANDIDATE)


CLASSIFICATION_RULES: tuple[Callable[[_Evaluation], Disposition | None], ...] = (
    _rule_system_account,
    _rule_missing_data,
    _rule_unclean_shutdown,
    _rule_retention,
    _rule_skiplist,
    _rule_loaded,
    _rule_evictable,
)


def classify(
    record: NormalizedProfileRecord,
    config: ReaperConfig,
    now: int,
    threshold: int | None,
    store: ProfileStore,
    logger: logging.Logger | None = None,
) -> Disposition:
    """Return the first disposition produced by CLASSIFICATION_RULES.

    Later rules only see records that survived the earlier ones, so the table
    order is the precedence. A ``None`` threshold is derived from ``now`` and
    the configured retention window.
    """
    if threshold is None:
        threshold = preserve_threshold(now, config.retention_days)
    ev = _Evaluation(
        record=record,
        config=config,
        threshold=threshold,
        store=store,
        logger=logger or logging.getLogger(APP_NAME),
        effective_load=record.load_instant,
        unclean=is_unclean(record.load_instant, record.unload_instant),
    )
    for rule in CLASSIFICATION_RULES:
        disposition = rule(ev)
        if disposition is not None:
            return disposition
    raise AssertionError("classification table has no terminal rule")


def classify_working_set(
    working_set: WorkingSet,
    config: ReaperConfig,
    now: int,
    store: ProfileStore,
    logger: logging.Logger | None = None,
) -> list[ClassifiedProfile]:
    threshold = preserve_threshold(now, config.retention_days)
    out = []
    for record in working_set.records:
        disposition = classify(record, config, now, threshold, store, logger)
        out.append(
            ClassifiedProfile(
                record=record,
                disposition=disposition,
                age_days=age_in_days(now, disposition.effective_load),
            )
        )
    return out


def order_for_processing(items: Iterable[ClassifiedProfile], destructive: bool) -> list[ClassifiedProfile]:
    """Newest first for listing, oldest first when deleting."""
    if destructive:
        return sorted(items, key=lambda c: (c.disposition.effective_load, c.record.sid))
    return sorted(items, key=lambda c: (-c.disposition.effective_load, c.record.sid))


# ---------------------------- Orphan Reconciler ----------------------------- #


def reconcile_folders(
    folders: Sequence[FolderRecord],
    records: Sequence[NormalizedProfileRecord],
    extra_exclusions: Iterable[str] = (),
) -> list[FolderClassification]:
    owners: dict[str, str] = {}
    for rec in records:
        name = rec.folder_name.lower()
        if name:
            owners.setdefault(name, rec.sid)

    excluded = DEFAULT_FOLDER_EXCLUSIONS | {x.lower() for x in extra_exclusions}
    out = []
    for folder in sorted(folders, key=lambda f: f.name.lower()):
        key = folder.name.lower()
        if key in excluded:
            out.append(FolderClassification(folder=folder, verdict=FOLDER_EXCLUDED))
        elif key in owners:
            out.append(FolderClassification(folder=folder, verdict=FOLDER_OWNED, owner_sid=owners[key]))
        else:
            out.append(FolderClassification(folder=folder, verdict=FOLDER_ORPHAN))
    return out


# ------------------------------- Reporting ---------------------------------- #


def format_profile_line(item: ClassifiedProfile, verdict: str) -> str:
    rec = item.record
    return (
        f"{rec.sid:<46} {(rec.friendly_name or '(unresolved)'):<28} {(rec.image_path or '(no path)'):<36} "
        f"load={format_instant(rec.load_instant):<16} unload={format_instant(rec.unload_instant):<16} "
        f"age={item.age_days:>6}d  {verdict}"
    )


def format_folder_line(entry: FolderClassification, verdict: str, size: str = "") -> str:
    line = f"{entry.folder.path:<60} {verdict}"
    if size:
        line += f"  [{size}]"
    return line


@dataclasses.dataclass
class RunReport:
    """Everything one run decided and did."""

    created_at_utc: str
    dry_run: bool
    retention_days: int
    users_root: str
    lines: list[str] = dataclasses.field(default_factory=list)
    profiles: list[dict[str, Any]] = dataclasses.field(default_factory=list)
    folders: list[dict[str, Any]] = dataclasses.field(default_factory=list)
    diagnostics: list[str] = dataclasses.field(default_factory=list)
    evictable: int = 0
    deleted: int = 0
    failed: int = 0
    repaired: int = 0
    skipped: int = 0
    preserved: int = 0
    hidden: int = 0
    orphans_found: int = 0
    orphans_removed: int = 0
    orphan_items_failed: int = 0

    def summary_line(self) -> str:
        mode = "dry-run" if self.dry_run else "cleanup"
        return (
            f"[{mode}] profiles: {len(self.profiles)} listed, {self.evictable} stale, "
            f"{self.deleted} deleted, {self.failed} failed, {self.repaired} repaired, "
            f"{self.skipped} skipped, {self.preserved} preserved; "
            f"orphan folders: {self.orphans_found} found, {self.orphans_removed} removed"
        )

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["summary"] = self.summary_line()
        return data


# ------------------------------ Orchestrator -------------------------------- #


class ProfileReaper:
    """Classify every profile and folder, then act on the evictable ones."""

    def __init__(
        self,
        directory: ProfileDirectory,
        store: ProfileStore,
        filesystem: Filesystem,
        config: ReaperConfig,
        logger: logging.Logger | None = None,
    ):
        self.directory = directory
        self.store = store
        self.filesystem = filesystem
        self.config = config
        self.logger = logger or logging.getLogger(APP_NAME)

    def build_working_set(self) -> WorkingSet:
        return ProfileDirectoryAdapter(self.directory, self.logger).load()

    def classify_all(self, working_set: WorkingSet, now: int) -> list[ClassifiedProfile]:
        return classify_working_set(working_set, self.config, now, self.store, self.logger)

    def run(self, now: int | None = None) -> RunReport:
        now_ts = now if now is not None else now_instant()
        cfg = self.config
        report = RunReport(
            created_at_utc=now_utc_iso(),
            dry_run=not cfg.destructive,
            retention_days=cfg.retention_days,
            users_root=cfg.users_root,
        )
        self.logger.info(
            "run_start days=%s cleanup=%s orphans=%s dirty=%s repair=%s",
            cfg.retention_days,
            cfg.cleanup_enabled,
            cfg.orphan_removal_enabled,
            cfg.treat_unclean_as_old,
            cfg.attempt_registry_repair,
        )

        working_set = self.build_working_set()
        report.diagnostics.extend(working_set.diagnostics)

        classified = self.classify_all(working_set, now_ts)
        for item in order_for_processing(classified, destructive=cfg.cleanup_enabled):
            self._process_profile(item, report)

        self._process_folders(working_set, report)

        if cfg.verbose:
            report.lines.extend(f"note: {d}" for d in report.diagnostics)
        report.lines.append(report.summary_line())
        self.logger.info(
            "run_complete deleted=%s failed=%s repaired=%s orphans_found=%s orphans_removed=%s",
            report.deleted,
            report.failed,
            report.repaired,
            report.orphans_found,
            report.orphans_removed,
        )
        return report

    def _is_hidden(self, disposition: Disposition) -> bool:
        cfg = self.config
        if disposition.kind == ADMIN_EXEMPT:
            return not (cfg.include_admin or cfg.verbose)
        if disposition.kind == NO_IMAGE_PATH:
            return cfg.hide_missing_path
        if disposition.kind == NO_LOAD_TIME:
            return cfg.hide_never_loaded
        return False

    def _process_profile(self, item: ClassifiedProfile, report: RunReport) -> None:
        disp = item.disposition
        rec = item.record
        entry: dict[str, Any] = {
            "sid": rec.sid,
            "name": rec.friendly_name,
            "image_path": rec.image_path,
            "load": format_instant(rec.load_instant),
            "unload": format_instant(rec.unload_instant),
            "age_days": item.age_days,
            "disposition": disp.kind,
            "unclean": disp.unclean,
            "action": "reported",
        }

        if disp.kind in EXEMPT_DISPOSITIONS or disp.kind in INFORMATIONAL_DISPOSITIONS:
            report.skipped += 1
            entry["action"] = "skipped"
            verdict = f"skipped ({disp.note})"
        elif disp.kind == PRESERVED:
            report.preserved += 1
            entry["action"] = "preserved"
            verdict = "preserved"
        else:
            report.evictable += 1
            verdict = self._evict(rec, entry, report)

        if disp.unclean:
            verdict += " [unclean shutdown]"
        if self.config.verbose and disp.note and disp.kind not in EXEMPT_DISPOSITIONS | INFORMATIONAL_DISPOSITIONS:
            verdict += f" ({disp.note})"

        if self._is_hidden(disp):
            report.hidden += 1
            return
        report.profiles.append(entry)
        report.lines.append(format_profile_line(item, verdict))

    def _evict(self, rec: NormalizedProfileRecord, entry: dict[str, Any], report: RunReport) -> str:
        if not self.config.cleanup_enabled:
            entry["action"] = "would_delete"
            return "stale (would delete)"

        try:
            outcome = self.store.delete(rec.sid)
        except DeleteError as exc:
            outcome = DeleteOutcome(success=False, reason=str(exc))

        if outcome.success:
            report.deleted += 1
            entry["action"] = "deleted"
            self.logger.info(
                "profile_deleted sid=%s path=%s already_absent=%s", rec.sid, rec.image_path, outcome.already_absent
            )
            return "deleted (already absent)" if outcome.already_absent else "deleted"

        report.failed += 1
        entry["action"] = "delete_failed"
        entry["error"] = outcome.reason
        self.logger.error("profile_delete_failed sid=%s path=%s err=%s", rec.sid, rec.image_path, outcome.reason)
        verdict = f"delete failed: {outcome.reason}"

        if self.config.attempt_registry_repair:
            try:
                self.store.repair(rec.sid, rec.image_path)
            except RepairError as exc:
                entry["repair"] = f"failed: {exc}"
                self.logger.error("profile_repair_failed sid=%s err=%s", rec.sid, exc)
                verdict += f"; repair failed: {exc}"
            else:
                report.repaired += 1
                entry["repair"] = "ok"
                self.logger.info("profile_repaired sid=%s values=%s", rec.sid, ",".join(REPAIR_VALUE_NAMES))
                verdict += "; registry repaired, retry on next run"
        return verdict

    def _process_folders(self, working_set: WorkingSet, report: RunReport) -> None:
        cfg = self.config
        fs = self.filesystem
        try:
            if not fs.exists(cfg.users_root):
                report.diagnostics.append(f"users root not found: {cfg.users_root}")
                self.logger.warning("users_root_missing path=%s", cfg.users_root)
                return
            folders = fs.list_directories(cfg.users_root)
        except FilesystemError as exc:
            report.diagnostics.append(f"cannot list {cfg.users_root}: {exc}")
            self.logger.error("users_root_list_failed path=%s err=%s", cfg.users_root, exc)
            return

        for entry in reconcile_folders(folders, working_set.records, cfg.extra_folder_exclusions):
            path = entry.folder.path
            row: dict[str, Any] = {"name": entry.folder.name, "path": path, "verdict": entry.verdict}
            if entry.verdict == FOLDER_EXCLUDED:
                if cfg.verbose:
                    report.lines.append(format_folder_line(entry, "excluded"))
                continue

            size = fs.directory_size_report(path) if cfg.show_size else ""
            if entry.verdict == FOLDER_OWNED:
                row["owner_sid"] = entry.owner_sid
                if cfg.verbose:
                    report.folders.append(row)
                    report.lines.append(format_folder_line(entry, f"owned by {entry.owner_sid}", size))
                continue

            report.orphans_found += 1
            if cfg.orphan_removal_enabled:
                result = fs.delete_recursive(path)
                row.update(removed=result.removed, failed=result.failed, errors=list(result.errors))
                report.orphan_items_failed += result.failed
                if result.complete:
                    report.orphans_removed += 1
                    row["action"] = "removed"
                    verdict = f"orphan removed ({result.removed} items)"
                    self.logger.info("orphan_removed path=%s items=%s", path, result.removed)
                else:
                    row["action"] = "partially_removed"
                    verdict = f"orphan partially removed ({result.removed} removed, {result.failed} failed)"
                    self.logger.warning(
                        "orphan_partial path=%s removed=%s failed=%s", path, result.removed, result.failed
                    )
            else:
                row["action"] = "reported"
                verdict = "orphan"
            report.folders.append(row)
            report.lines.append(format_folder_line(entry, verdict, size))


# -------------------------------- CLI -------------------------------------- #


def require_confirm(args: argparse.Namespace, message: str) -> bool:
    if getattr(args, "yes", False):
        return True
    ans = input(f"{message} [y/N]: ").strip().lower()
    return ans in {"y", "yes"}


def retention_days_arg(value: str) -> int:
    try:
        days = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}") from exc
    if not 0 <= days <= MAX_RETENTION_DAYS:
        raise argparse.ArgumentTypeError(f"must be between 0 and {MAX_RETENTION_DAYS}")
    return days


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="profile-reaper",
        description="List and remove stale Windows user profiles (dry-run by default)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--days",
        type=retention_days_arg,
        default=DEFAULT_RETENTION_DAYS,
        help="Retention window; profiles loaded within it are kept (0 lists everything)",
    )
    parser.add_argument("--include-admin", action="store_true", help="Show built-in system account profiles")
    parser.add_argument("--cleanup", action="store_true", help="Delete stale profiles (otherwise list only)")
    parser.add_argument(
        "--cleanup-and-orphan",
        action="store_true",
        help="Shortcut for --cleanup --orphan",
    )
    parser.add_argument("--dirty", action="store_true", help="Treat unclean-shutdown profiles as maximally old")
    parser.add_argument("--orphan", action="store_true", help="Remove folders under the users root with no profile")
    parser.add_argument("--repair", action="store_true", help="Re-create registry values when a delete fails")
    parser.add_argument("--hide-no-load-time", action="store_true", help="Hide profiles that were never loaded")
    parser.add_argument("--hide-no-path", action="store_true", help="Hide profiles without an image path")
    parser.add_argument("--verbose", action="store_true", help="Annotate every decision")
    parser.add_argument("--debug", action="store_true", help="Debug logging to stderr")
    parser.add_argument("--size", action="store_true", help="Report folder sizes")
    parser.add_argument("--users-root", default=DEFAULT_USERS_ROOT, help="Folder holding the profile directories")
    parser.add_argument("--skiplist-file", default=None, help="JSON array of sids that are never removed")
    parser.add_argument("--yes", action="store_true", help="Non-interactive yes for confirmations")
    parser.add_argument("--output", default=None, help="Also write the run report as JSON")
    parser.add_argument("--log-file", default=str(DEFAULT_LOG_FILE), help="Action log file")
    return parser


def default_collaborators(logger: logging.Logger) -> tuple[ProfileDirectory, ProfileStore, Filesystem]:
    from profile_reaper.windows_collaborators import build_windows_collaborators

    return build_windows_collaborators(logger)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = ReaperConfig.from_namespace(args)
        logger = setup_logger(Path(args.log_file), debug=config.debug)

        if config.destructive and not require_confirm(
            args, f"Delete stale profiles older than {config.retention_days} days?"
        ):
            print("Cancelled; nothing was changed.")
            return 0

        directory, store, filesystem = default_collaborators(logger)
        report = ProfileReaper(directory, store, filesystem, config, logger).run()
    except ProfileReaperError as exc:
        print(json.dumps({
            "status": "error",
            "error": str(exc),
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return 1

    for line in report.lines:
        print(line)
    if args.output:
        export_json(Path(args.output), report.to_dict())
    return 1 if report.failed else 0


__all__ = [
    "ClassifiedProfile",
    "ConfigError",
    "DeleteError",
    "DeleteOutcome",
    "Disposition",
    "FolderDeleteResult",
    "FolderRecord",
    "NormalizedProfileRecord",
    "ProfileDirectoryAdapter",
    "ProfileReaper",
    "RawProfileEntry",
    "ReaperConfig",
    "RunReport",
    "WorkingSet",
    "age_in_days",
    "classify",
    "is_unclean",
    "reconcile_folders",
    "to_instant",
]


if __name__ == "__main__":
    raise SystemExit(main())
