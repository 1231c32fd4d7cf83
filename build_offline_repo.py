"""
Build a compact, offline-installable flat APT repository from this host.

The repository is assembled from:
 - .debs already sitting in the apt download cache (fast path),
 - repacked .debs (dpkg-repack) of every installed package that the cache
   didn't cover.

The interesting part is not calling the tools, it is deciding what is
MISSING. The host's installed set and the set of archive files we have are
two different views of the same thing, and they disagree in annoying ways:
epochs are dropped from filenames (or URL-escaped by apt), the same package
name exists in several versions in the cache, foreign-arch packages show up
as `libc6:i386`. So:

 - filenames are only a fast existence probe,
 - "present" is ALWAYS confirmed against the archive's own control data,
 - a package that can't be backed by an archive is recorded with a reason,
   never silently dropped and never allowed to abort the batch.

Output layout (consumed verbatim by repo_install.py):
    <repo>/pool/  Packages  Packages.gz  Release  installed-packages.csv
"""

import argparse
import concurrent.futures
import csv
import glob
import gzip
import os
import shutil
import sys
import tempfile
import threading
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

import flat_repo
from flat_repo import (
    ArchiveFile,
    ArchiveReadError,
    CommandResult,
    OfflineRepoError,
    Runner,
    run_command,
)

REPO_DIR = os.environ.get("REPO_DIR", os.path.expanduser("~/offline-repo"))
APT_CACHE_DIR = "/var/cache/apt/archives"
REGISTER_LIST = "/etc/apt/sources.list.d/offline-repo.list"
SCRATCH_DIRNAME = ".repack-work"

DPKG_QUERY_FORMAT = "${binary:Package}\\t${Package}\\t${Version}\\t${Architecture}\\t${db:Status-Status}\\n"

REQUIRED_TOOLS = ["dpkg-query", "apt-ftparchive"]
REPACK_TOOL = "dpkg-repack"

PRESENT = "present"
REPACKED = "repacked"
SKIPPED = "skipped"


class IndexGenerationError(OfflineRepoError):
    exit_code = 8


class UpdateFetchError(OfflineRepoError):
    exit_code = 9


class RepackError(Exception):
    """One package could not be turned into an archive. Never fatal."""


##############################################################################
# Installed package snapshot
##############################################################################

class PackageRecord(NamedTuple):
    """
    One installed unit as dpkg reports it.

    Identity is (name, version, architecture). qualified_name is dpkg's
    ${binary:Package} ("libc6:i386" for a foreign-arch package); it's what we
    hand to dpkg-repack, but it is NOT part of the identity, because the
    archive's control file only ever says "Package: libc6".
    """
    name: str
    version: str
    architecture: str
    qualified_name: str
    status: str = "installed"

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.name, self.version, self.architecture)

    def __str__(self) -> str:
        return f"{self.name} ({self.version}/{self.architecture})"


def parse_installed_packages(text: str) -> List[PackageRecord]:
    """
    Parse `dpkg-query -W -f DPKG_QUERY_FORMAT` output.

    The result is de-duplicated on the identity key and sorted by it. Both
    matter: a re-run against an unchanged host must walk the same list in the
    same order and decide the same thing for every entry.
    """
    by_key: Dict[Tuple[str, str, str], PackageRecord] = {}
    for line in text.splitlines():
        if not line.strip():
            continue
        parts = line.split("\t")
        if len(parts) < 4:
            raise OfflineRepoError(f"Unexpected dpkg-query output line: {line!r}")
        qualified, name, version, arch = (p.strip() for p in parts[:4])
        status = parts[4].strip() if len(parts) > 4 else "installed"
        if not name or not version:
            # purged-but-known entries carry no version; there is nothing to back.
            continue
        record = PackageRecord(name, version, arch, qualified or name, status)
        by_key.setdefault(record.key, record)
    return [by_key[k] for k in sorted(by_key)]


def query_installed_packages(runner: Runner = run_command) -> List[PackageRecord]:
    result = runner(["dpkg-query", "-W", "-f", DPKG_QUERY_FORMAT])
    if not result.ok:
        raise OfflineRepoError(f"dpkg-query failed: {result.last_line()}")
    return parse_installed_packages(result.stdout.decode("utf-8", "replace"))


##############################################################################
# Stage 1: optional download of pending updates
##############################################################################

def fetch_updates(runner: Runner = run_command) -> None:
    """
    Pull the newest updates into the apt cache without installing them.

    This shrinks the snapshot to "what this system would run if upgraded
    today": the harvest step then picks the new .debs up from the cache.
    """
    env = flat_repo.noninteractive_env()
    for cmd in (["apt-get", "update"],
                ["apt-get", "-y", "--download-only", "dist-upgrade"]):
        print(f"    [i] {' '.join(cmd)}")
        result = runner(cmd, env=env, on_line=lambda line: print(f"        {line}"))
        if not result.ok:
            raise UpdateFetchError(
                f"'{' '.join(cmd)}' failed ({result.last_line()}). "
                f"The pool has not been touched; fix apt or run without --include-updates."
            )


##############################################################################
# Stage 2: harvest the apt cache
##############################################################################

def harvest_cache(cache_dir: str, pool: str) -> Tuple[int, int]:
    """
    Copy cached .debs into the pool, never overwriting what is already there.

    A cached archive whose embedded identity the pool already holds under
    another name is not copied: apt caches `foo_1%3a2.0-1_amd64.deb` where
    dpkg-repack wrote `foo_2.0-1_amd64.deb`, and both would land in the
    index. Unreadable cached files are left out with a warning.

    Returns (copied, already_present).
    """
    index = PoolIndex(pool)
    copied = 0
    existing = 0
    for src in sorted(glob.glob(os.path.join(cache_dir, "*" + flat_repo.ARCHIVE_SUFFIX))):
        try:
            fields = flat_repo.read_control_fields(src)
        except ArchiveReadError as e:
            print(f"    [!] not harvesting unreadable cached archive: {e}")
            continue
        if not all(fields[f] for f in flat_repo.CONTROL_FIELDS):
            print(f"    [!] not harvesting {src}: incomplete control data")
            continue
        record = PackageRecord(fields["Package"], fields["Version"], fields["Architecture"], fields["Package"])
        if index.find(record) is not None:
            existing += 1
            continue
        dest = os.path.join(pool, os.path.basename(src))
        if flat_repo.place_no_clobber(src, dest, link=False):
            index.add(dest)
            copied += 1
        else:
            existing += 1
    return copied, existing


##############################################################################
# Stage 3: reconciliation
##############################################################################

class PoolIndex:
    """
    What the pool holds, keyed the two ways the engine probes it.

     - by basename: the O(1) exact-name probe,
     - by "name_" prefix: the candidates for the verified fallback.

    Embedded identities are read lazily and cached, since a big cache often
    has many versions of the same package and every one of them may be
    opened while checking different records. Shared between workers, so all
    map access goes through one lock; archive reads happen outside it.
    """

    def __init__(self, pool: str):
        self.pool = pool
        self._lock = threading.Lock()
        self._by_basename: Dict[str, List[str]] = {}
        self._by_prefix: Dict[str, List[str]] = {}
        self._identities: Dict[str, Optional[Dict[str, str]]] = {}
        for path in flat_repo.iter_pool_archives(pool):
            self.add(path)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._by_basename.values())

    def add(self, path: str) -> None:
        base = os.path.basename(path)
        prefix = base.split("_", 1)[0]
        with self._lock:
            paths = self._by_basename.setdefault(base, [])
            if path not in paths:
                paths.append(path)
                self._by_prefix.setdefault(prefix, []).append(path)

    def control_fields(self, path: str) -> Optional[Dict[str, str]]:
        with self._lock:
            if path in self._identities:
                return self._identities[path]
        try:
            fields: Optional[Dict[str, str]] = flat_repo.read_control_fields(path)
        except ArchiveReadError as e:
            print(f"    [!] unreadable archive in pool: {e}")
            fields = None
        with self._lock:
            self._identities[path] = fields
        return fields

    def matches(self, path: str, record: PackageRecord) -> bool:
        fields = self.control_fields(path)
        return fields is not None and flat_repo.same_identity(
            fields, record.name, record.version, record.architecture)

    def find(self, record: PackageRecord) -> Optional[str]:
        """
        Return an archive in the pool whose embedded identity equals `record`.

        Tier 1: the canonical filenames. Tier 2: every "name_*" file. Both
        tiers open the archive; a filename alone never proves anything (a
        loose "name_*" glob happily matches foo_1.0.1 when looking for
        foo_1.0, or an older version left over in the cache).
        """
        with self._lock:
            exact = [p for fn in flat_repo.canonical_filenames(
                        record.name, record.version, record.architecture)
                     for p in self._by_basename.get(fn, [])]
            loose = [p for p in self._by_prefix.get(record.name, []) if p not in exact]
        for path in exact + loose:
            if self.matches(path, record):
                return path
        return None


class ReconcileResult(NamedTuple):
    record: PackageRecord
    outcome: str
    detail: str


class ReconcileReport:
    """Every record's outcome, in record order. This is the batch API's return value."""

    def __init__(self, results: List[ReconcileResult]):
        self.results = results

    def _with(self, outcome: str) -> List[ReconcileResult]:
        return [r for r in self.results if r.outcome == outcome]

    @property
    def present(self) -> List[ReconcileResult]:
        return self._with(PRESENT)

    @property
    def repacked(self) -> List[ReconcileResult]:
        return self._with(REPACKED)

    @property
    def skipped(self) -> List[ReconcileResult]:
        return self._with(SKIPPED)

    def summary(self) -> str:
        return (f"{len(self.results)} installed, {len(self.present)} already in pool, "
                f"{len(self.repacked)} repacked, {len(self.skipped)} skipped")


class DpkgRepack:
    """Produce one archive from an installed package with dpkg-repack."""

    def __init__(self, runner: Runner = run_command):
        self.runner = runner

    def __call__(self, record: PackageRecord, workdir: str) -> str:
        result = self.runner([REPACK_TOOL, record.qualified_name], cwd=workdir)
        if not result.ok:
            raise RepackError(f"dpkg-repack failed: {result.last_line()}")
        produced = glob.glob(os.path.join(workdir, "*" + flat_repo.ARCHIVE_SUFFIX))
        if len(produced) != 1:
            raise RepackError(f"dpkg-repack produced {len(produced)} archives, expected 1")
        return produced[0]


Repacker = Callable[[PackageRecord, str], str]


class ReconciliationEngine:
    """
    Close the gap between "installed" and "available as an archive".

    For each record: already represented in the pool -> present; otherwise
    repack it -> repacked; anything that goes wrong for that one package ->
    skipped with a reason. The batch is best-effort and NEVER aborts on a
    single package.

    Records are independent, so they are decided concurrently on a bounded
    thread pool. The only shared mutable thing is the pool directory, and
    writes into it go through place_no_clobber().
    """

    def __init__(self, repo_dir: str, repacker: Optional[Repacker], jobs: int = 1):
        self.repo_dir = repo_dir
        self.pool = PoolIndex(flat_repo.pool_dir(repo_dir))
        self.repacker = repacker
        self.jobs = max(1, jobs)

    def reconcile(self, records: List[PackageRecord]) -> ReconcileReport:
        scratch = os.path.join(self.repo_dir, SCRATCH_DIRNAME)
        os.makedirs(scratch, exist_ok=True)
        results: Dict[int, ReconcileResult] = {}
        try:
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.jobs) as executor:
                future_to_idx = {
                    executor.submit(self._reconcile_one, record, scratch): idx
                    for idx, record in enumerate(records)
                }
                for future in concurrent.futures.as_completed(future_to_idx):
                    idx = future_to_idx[future]
                    try:
                        results[idx] = future.result()
                    except Exception as e:
                        results[idx] = ReconcileResult(records[idx], SKIPPED, f"unexpected error: {e}")
                    outcome = results[idx]
                    if outcome.outcome == REPACKED:
                        print(f"    [+] repacked {outcome.record}")
                    elif outcome.outcome == SKIPPED:
                        print(f"    [!] skipped {outcome.record}: {outcome.detail}")
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
        return ReconcileReport([results[i] for i in range(len(records))])

    def _reconcile_one(self, record: PackageRecord, scratch: str) -> ReconcileResult:
        if record.status and record.status != "installed":
            return ReconcileResult(record, SKIPPED, f"not installed (dpkg status: {record.status})")

        found = self.pool.find(record)
        if found:
            return ReconcileResult(record, PRESENT, found)

        if self.repacker is None:
            return ReconcileResult(record, SKIPPED, f"{REPACK_TOOL} not available")

        workdir = tempfile.mkdtemp(prefix=f"{record.name}.", dir=scratch)
        try:
            try:
                produced = self.repacker(record, workdir)
            except RepackError as e:
                # virtual/meta packages, removed-but-config packages, ...
                return ReconcileResult(record, SKIPPED, f"not repackable: {e}")
            return self._place(record, produced)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def _place(self, record: PackageRecord, produced: str) -> ReconcileResult:
        dest = os.path.join(self.pool.pool, os.path.basename(produced))
        if flat_repo.place_no_clobber(produced, dest, link=True):
            # the pool is append-only: a wrong archive stays, the record is not backed by it
            self.pool.add(dest)
            if not self.pool.matches(dest, record):
                fields = self.pool.control_fields(dest) or {}
                carried = "{} ({}/{})".format(*(fields.get(f, "?") for f in flat_repo.CONTROL_FIELDS))
                return ReconcileResult(
                    record, SKIPPED,
                    f"repacked archive {os.path.basename(dest)} carries {carried}, not {record} "
                    f"(package changed during the build?)")
            return ReconcileResult(record, REPACKED, dest)

        # Somebody else got the name first. Fine if it is the same package.
        self.pool.add(dest)
        if self.pool.matches(dest, record):
            return ReconcileResult(record, PRESENT, dest)
        return ReconcileResult(
            record, SKIPPED,
            f"pool already holds a different file named {os.path.basename(dest)}")


##############################################################################
# Stage 4: index
##############################################################################

def _write_atomic(path: str, data: bytes) -> None:
    tmp = path + ".tmp"
    with open(tmp, "wb") as f:
        f.write(data)
    os.replace(tmp, path)


class IndexGenerator:
    """
    Turn the pool into Packages, Packages.gz and an unsigned Release.

    apt-ftparchive is a pure function here: directory of .debs in, index
    text out. We only take care of writing its output without leaving a
    half-written index behind.
    """

    def __init__(self, repo_dir: str, runner: Runner = run_command):
        self.repo_dir = repo_dir
        self.runner = runner

    def _ftparchive(self, *args: str) -> bytes:
        result: CommandResult = self.runner(["apt-ftparchive"] + list(args), cwd=self.repo_dir)
        if not result.ok:
            raise IndexGenerationError(
                f"apt-ftparchive {' '.join(args)} failed in {self.repo_dir}: {result.last_line()}")
        return result.stdout

    def generate(self) -> int:
        packages = self._ftparchive("packages", "./" + flat_repo.POOL_DIRNAME)
        _write_atomic(os.path.join(self.repo_dir, flat_repo.PACKAGES_INDEX), packages)
        _write_atomic(os.path.join(self.repo_dir, flat_repo.PACKAGES_INDEX_GZ),
                      gzip.compress(packages, compresslevel=9, mtime=0))

        release_path = os.path.join(self.repo_dir, flat_repo.RELEASE_FILE)
        if os.path.exists(release_path):
            os.unlink(release_path)
        _write_atomic(release_path, self._ftparchive("release", "."))

        return len(flat_repo.read_index(os.path.join(self.repo_dir, flat_repo.PACKAGES_INDEX)))


##############################################################################
# Stage 5: inventory
##############################################################################

class InventoryRow(NamedTuple):
    package: str
    version: str
    architecture: str
    size: int
    filename: str
    sha256: str


def inventory_row(path: str, repo_dir: str) -> InventoryRow:
    """
    Describe one archive. Control fields are fail-soft (empty string), the
    size and hash are not: without them the row would be a lie.
    """
    archive = ArchiveFile.load(path, with_hash=True, fail_soft=True)
    return InventoryRow(
        package=archive.name,
        version=archive.version,
        architecture=archive.arch,
        size=archive.size,
        filename=os.path.relpath(path, repo_dir),
        sha256=archive.sha256,
    )


class InventoryAuditor:
    """
    Emit installed-packages.csv: one row per archive in the pool, with SHA-256.

    Rows are computed in parallel and written from this thread only, so a row
    is always one complete tuple about one file. Row order is completion
    order; only the header position is fixed.
    """

    def __init__(self, repo_dir: str, jobs: int = 1):
        self.repo_dir = repo_dir
        self.jobs = max(1, jobs)
        self.failures: List[Tuple[str, str]] = []

    def audit(self) -> List[InventoryRow]:
        archives = flat_repo.iter_pool_archives(flat_repo.pool_dir(self.repo_dir))
        rows: List[InventoryRow] = []
        self.failures = []
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.jobs) as executor:
            future_to_path = {executor.submit(inventory_row, path, self.repo_dir): path
                              for path in archives}
            for future in concurrent.futures.as_completed(future_to_path):
                path = future_to_path[future]
                try:
                    rows.append(future.result())
                except OSError as e:
                    self.failures.append((path, str(e)))
                    print(f"    [!] could not inventory {path}: {e}")
        return rows

    def write(self, rows: List[InventoryRow]) -> str:
        csv_path = os.path.join(self.repo_dir, flat_repo.INVENTORY_FILE)
        tmp = csv_path + ".tmp"
        with open(tmp, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f, lineterminator="\n")
            writer.writerow(flat_repo.INVENTORY_HEADER)
            for row in rows:
                writer.writerow(row)
        os.replace(tmp, csv_path)
        return csv_path


##############################################################################
# Stage 6: optional registration on this host
##############################################################################

def register_repo(repo_dir: str, trusted: bool, list_path: str = REGISTER_LIST,
                  runner: Runner = run_command) -> None:
    entry = flat_repo.source_entry(os.path.realpath(repo_dir), trusted=trusted)
    with open(list_path, "w") as f:
        f.write(entry + "\n")
    print(f"    [i] wrote '{entry}' to {list_path}")
    result = runner(["apt-get", "update"], on_line=lambda line: print(f"        {line}"))
    if not result.ok:
        print(f"    [!] apt-get update failed after registering: {result.last_line()}")


##############################################################################
# Pipeline
##############################################################################

def build(args: argparse.Namespace, runner: Runner = run_command) -> ReconcileReport:
    flat_repo.require_tools(REQUIRED_TOOLS + (["apt-get"] if args.include_updates or args.register else []))
    have_repack = shutil.which(REPACK_TOOL) is not None

    repo_dir = os.path.abspath(args.repo_dir)
    pool = flat_repo.pool_dir(repo_dir)
    print(f"[i] Repo dir: {repo_dir}")
    os.makedirs(pool, exist_ok=True)

    if args.include_updates:
        print("[1/6] Refreshing indices and downloading updates (no install) ...")
        fetch_updates(runner)
    else:
        print("[1/6] Skipping download of updates; using what's already on the system.")

    print(f"[2/6] Harvesting cached .debs from {args.cache_dir} ...")
    copied, existing = harvest_cache(args.cache_dir, pool)
    if copied or existing:
        print(f"    [i] {copied} copied, {existing} already in pool")
    else:
        print("    [i] No cached packages found.")

    print("[3/6] Ensuring every installed package has a .deb in the pool ...")
    records = query_installed_packages(runner)
    if not have_repack:
        print(f"    [!] {REPACK_TOOL} not found. Packages missing from the cache will be skipped.")
        print(f"        Install it for a complete snapshot: sudo apt-get install {REPACK_TOOL}")
    engine = ReconciliationEngine(repo_dir, DpkgRepack(runner) if have_repack else None, jobs=args.jobs)
    report = engine.reconcile(records)
    print(f"    [i] {report.summary()}")

    print("[4/6] Building Packages, Packages.gz and Release ...")
    stanzas = IndexGenerator(repo_dir, runner).generate()
    print(f"    [i] {stanzas} index entries")

    csv_path = os.path.join(repo_dir, flat_repo.INVENTORY_FILE)
    print(f"[5/6] Emitting CSV inventory with SHA256 -> {csv_path}")
    auditor = InventoryAuditor(repo_dir, jobs=args.jobs)
    rows = auditor.audit()
    auditor.write(rows)
    print(f"    [i] {len(rows)} rows, {len(auditor.failures)} files could not be read")

    print(f"[ok] Repo built at: {repo_dir}")
    print("     pool/  Packages  Packages.gz  Release  installed-packages.csv")

    if args.register:
        print(f"[6/6] Registering local repo -> {REGISTER_LIST}")
        register_repo(repo_dir, trusted=args.trusted == "yes", runner=runner)

    if report.skipped:
        print(f"\n[i] {len(report.skipped)} installed package(s) are not backed by an archive:")
        for result in report.skipped:
            print(f"    {result.record}: {result.detail}")
    return report


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Snapshot this host's installed packages into a flat offline APT repository.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument('--repo-dir', default=REPO_DIR,
                        help='Where to build the repo (default: $REPO_DIR or ~/offline-repo).')
    parser.add_argument('--cache-dir', default=APT_CACHE_DIR,
                        help='APT download cache to harvest .debs from.')
    parser.add_argument('--include-updates', action='store_true',
                        help='Download the latest updates (download-only) into the APT cache before building.')
    parser.add_argument('--register', action='store_true',
                        help='Add a local file: source pointing at the repo on this host and apt-get update.')
    parser.add_argument('--trusted', choices=['yes', 'no'], default='yes',
                        help="Whether the registered source gets [trusted=yes] (default: yes).")
    parser.add_argument('--jobs', type=int, default=flat_repo.default_jobs(),
                        help='Parallel repack/hash workers (default: CPU count).')
    args = parser.parse_args(argv)
    if args.jobs < 1:
        parser.error("--jobs must be at least 1")
    return args


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        build(args)
    except OfflineRepoError as e:
        print(f"[!] {e}", file=sys.stderr)
        return e.exit_code
    return 0


if __name__ == "__main__":
    sys.exit(main())
