"""
Offline OS upgrade from a flat repository, with APT switched to local-only.

Pipeline:
  1. find a flat repo (Packages or Packages.gz + pool/) under the search root,
  2. mirror it to /opt/offline-repo with _apt-readable permissions and verify
     the copy,
  3. quarantine EVERY existing APT source and write exactly one
     `deb [trusted=yes] file:/opt/offline-repo ./`,
  4. refuse to go on unless that one source is the only one left AND apt can
     actually load an index from it,
  5. full-upgrade, kernel/identity/desktop packages, initramfs + grub,
  6. report.

Steps 1 to 4 are fail-closed: any problem stops the run before anything
destructive happens and prints where the operator's old sources are. There
is NO automatic rollback. Restoring from the quarantine directory is a
manual, deliberate act, because a rollback on top of a half-applied upgrade
is worse than a stopped one.
"""

import argparse
import enum
import os
import re
import shutil
import stat
import sys
from datetime import datetime, timezone
from typing import Callable, List, NamedTuple, Optional, Tuple

from debian.deb822 import Deb822

import flat_repo
from flat_repo import OfflineRepoError, Runner, run_command

STAGING_DIR = "/opt/offline-repo"
APT_ETC_DIR = "/etc/apt"
APT_LISTS_DIR = "/var/lib/apt/lists"
LOG_DIR = "/var/log"

DEFAULT_KERNEL_PACKAGES = ["linux-generic", "base-files", "lsb-release"]
DEFAULT_DESKTOP_META = "ubuntu-desktop"

REQUIRED_TOOLS = ["apt-get", "apt-cache", "dpkg-query"]

EXIT_UPGRADE_INCOMPLETE = 10


class RepoNotFoundError(OfflineRepoError):
    exit_code = 4

    def __init__(self, search_root: str):
        super().__init__(
            f"No flat repo found under {search_root}. Need Packages or Packages.gz "
            f"and pool/ in the same directory. Nothing has been changed."
        )


class StagingError(OfflineRepoError):
    exit_code = 5


class SourceSwitchError(OfflineRepoError):
    exit_code = 6

    def __init__(self, message: str, quarantine_dir: str):
        self.quarantine_dir = quarantine_dir
        super().__init__(
            f"{message}\nPrevious APT sources are in {quarantine_dir}. "
            f"Inspect it and /etc/apt/* before restoring anything by hand."
        )


class VerificationError(SourceSwitchError):
    exit_code = 7


def utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


##############################################################################
# Run log
##############################################################################

class RunLog:
    """
    Timestamped progress messages plus raw collaborator output, printed and
    (when a path is given) appended to the run's log file.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._fh = open(path, "a", encoding="utf-8") if path else None

    def __call__(self, message: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SUTC")
        self._emit(f"{stamp} {message}", sys.stderr)

    def output(self, line: str) -> None:
        self._emit(line, sys.stdout)

    def _emit(self, text: str, stream) -> None:
        print(text, file=stream, flush=True)
        if self._fh:
            self._fh.write(text + "\n")
            self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


##############################################################################
# Discovery
##############################################################################

def _depth(path: str, root: str) -> int:
    rel = os.path.relpath(path, root)
    return 0 if rel == "." else rel.count(os.sep) + 1


def find_repo_candidates(search_root: str, staging_dir: Optional[str] = None) -> List[str]:
    """
    Every directory under search_root that holds a pool/ directory and an index.

    Ordered shallowest first, then by path, so the choice between several
    candidates is stable: the repo closest to where the operator stands wins.
    A previous run's staging_dir sorts after every other candidate, so an old
    /opt/offline-repo never shadows freshly mounted media under /.
    A candidate's own pool/ is not walked (archives never hold an index, and
    pools are where all the files are).
    """
    root = os.path.abspath(search_root)
    found: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        if flat_repo.POOL_DIRNAME in dirnames and flat_repo.has_repo_layout(dirpath):
            found.append(dirpath)
            dirnames.remove(flat_repo.POOL_DIRNAME)
    staged = os.path.realpath(staging_dir) if staging_dir else None
    return sorted(found, key=lambda p: (os.path.realpath(p) == staged, _depth(p, root), p))


def discover_repo(search_root: str, log: Callable[[str], None] = print,
                  staging_dir: Optional[str] = None) -> str:
    candidates = find_repo_candidates(search_root, staging_dir)
    if not candidates:
        raise RepoNotFoundError(os.path.abspath(search_root))
    if len(candidates) > 1:
        log(f"[i] {len(candidates)} flat repos found, using: {candidates[0]}")
        for other in candidates[1:]:
            log(f"    ignored: {other}")
    return candidates[0]


##############################################################################
# Staging
##############################################################################

def _remove(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.unlink(path)


def _needs_copy(src: str, dest: str) -> bool:
    if not os.path.lexists(dest) or os.path.islink(dest) or not os.path.isfile(dest):
        return True
    s, d = os.stat(src), os.stat(dest)
    return s.st_size != d.st_size or int(s.st_mtime) != int(d.st_mtime)


def _copy_symlink(src: str, dest: str) -> None:
    target = os.readlink(src)
    if os.path.islink(dest) and os.readlink(dest) == target:
        return
    if os.path.lexists(dest):
        _remove(dest)
    os.symlink(target, dest)


def mirror_tree(src: str, dest: str) -> Tuple[int, int]:
    """
    Make dest an exact copy of src: new/changed files copied, symlinks kept
    as symlinks, anything in dest that src doesn't have deleted.

    Unchanged files (same size and mtime) are left alone, so re-staging the
    same repo is cheap. Returns (copied, removed).
    """
    os.makedirs(dest, exist_ok=True)
    wanted = set()
    copied = 0
    for dirpath, dirnames, filenames in os.walk(src):
        dirnames.sort()
        rel = os.path.relpath(dirpath, src)
        target_dir = dest if rel == "." else os.path.join(dest, rel)
        for name in dirnames + filenames:
            s = os.path.join(dirpath, name)
            d = os.path.join(target_dir, name)
            wanted.add(os.path.normpath(os.path.join(rel, name)))
            if os.path.islink(s):
                _copy_symlink(s, d)
            elif name in dirnames:
                if os.path.lexists(d) and (os.path.islink(d) or not os.path.isdir(d)):
                    _remove(d)
                os.makedirs(d, exist_ok=True)
            elif _needs_copy(s, d):
                if os.path.lexists(d):
                    _remove(d)
                tmp = d + ".staging"
                shutil.copy2(s, tmp)
                os.replace(tmp, d)
                copied += 1

    removed = 0
    for dirpath, dirnames, filenames in os.walk(dest, topdown=False):
        rel = os.path.relpath(dirpath, dest)
        for name in filenames + dirnames:
            if os.path.normpath(os.path.join(rel, name)) not in wanted:
                _remove(os.path.join(dirpath, name))
                removed += 1
    return copied, removed


def relax_permissions(root: str) -> None:
    """chmod -R u+rwX,go+rX,go-w: the unprivileged _apt user must read everything."""
    for dirpath, dirnames, filenames in os.walk(root):
        for path in [dirpath] + [os.path.join(dirpath, n) for n in dirnames + filenames]:
            st = os.lstat(path)
            if stat.S_ISLNK(st.st_mode):
                continue
            mode = stat.S_IMODE(st.st_mode)
            if stat.S_ISDIR(st.st_mode) or mode & 0o111:
                mode |= 0o755
            else:
                mode |= 0o644
            mode &= ~0o022
            os.chmod(path, mode)


def verify_staged_repo(repo_dir: str) -> int:
    """
    Check that a staged copy is a usable flat repo. Returns the stanza count.

    Beyond pool/ + index, every Filename in the index must exist in the copy
    with the advertised Size: a partial copy otherwise looks perfectly fine
    right up to the moment dpkg needs the missing file mid-upgrade.
    """
    if not os.path.isdir(flat_repo.pool_dir(repo_dir)):
        raise StagingError(f"Staged repo {repo_dir} is missing pool/. APT sources were not touched.")
    index = flat_repo.find_index(repo_dir)
    if index is None:
        raise StagingError(
            f"Staged repo {repo_dir} is missing Packages or Packages.gz. APT sources were not touched.")
    try:
        stanzas = flat_repo.read_index(index)
    except (OSError, EOFError, UnicodeError) as e:
        raise StagingError(f"Staged index {index} is unreadable: {e}. APT sources were not touched.")
    if not stanzas:
        raise StagingError(f"Staged index {index} lists no packages. APT sources were not touched.")

    problems: List[str] = []
    root = os.path.normpath(os.path.abspath(repo_dir))
    for stanza in stanzas:
        filename = stanza.get("Filename", "")
        path = os.path.normpath(os.path.join(root, filename))
        size = stanza.get("Size", "").strip()
        if not filename or not path.startswith(root + os.sep):
            problems.append(f"{stanza.get('Package', '?')}: bad Filename {filename!r}")
        elif not os.path.isfile(path):
            problems.append(f"{filename}: missing")
        elif size and (not size.isdigit() or int(size) != os.path.getsize(path)):
            problems.append(f"{filename}: size {os.path.getsize(path)}, index says {size}")
    if problems:
        shown = "\n  ".join(problems[:10])
        more = f"\n  ... and {len(problems) - 10} more" if len(problems) > 10 else ""
        raise StagingError(
            f"Staged repo {repo_dir} does not match its index ({len(problems)} problem(s)):\n  "
            f"{shown}{more}\nAPT sources were not touched.")
    return len(stanzas)


class RepoStager:
    """Mirror a discovered repo into the fixed staging location and verify the copy."""

    def __init__(self, dest: str = STAGING_DIR, log: Callable[[str], None] = print):
        self.dest = dest
        self.log = log

    def stage(self, src: str) -> str:
        src_real = os.path.realpath(src)
        dest_real = os.path.realpath(self.dest)
        if src_real == dest_real:
            self.log(f"[i] Repo already at {self.dest}; verifying in place")
        else:
            if dest_real.startswith(src_real + os.sep) or src_real.startswith(dest_real + os.sep):
                raise StagingError(
                    f"Cannot stage {src} to {self.dest}: one contains the other. APT sources were not touched.")
            self.log(f"[i] mirror from: {src}/  ->  {self.dest}/")
            copied, removed = mirror_tree(src, self.dest)
            self.log(f"[i] {copied} file(s) copied, {removed} stale entr(y/ies) removed")
        relax_permissions(self.dest)
        stanzas = verify_staged_repo(self.dest)
        self.log(f"[i] Staged repo verified: {stanzas} package(s) in index")
        return self.dest


##############################################################################
# Source configuration
##############################################################################

_ONE_LINE_ENTRY = re.compile(r'^(deb|deb-src)\s+(?:\[[^\]]*\]\s+)?(\S+)')


class SourceEntry(NamedTuple):
    origin: str
    kind: str
    uri: str


def parse_source_file(path: str) -> List[SourceEntry]:
    """
    Active entries in one APT source file.

    `.sources` files are deb822 stanzas (`Enabled: no` stanzas are inactive);
    anything else is read as one-line format, the way apt reads .list files.
    We read every file, not just the ones apt would: when deciding whether a
    host is local-only we would rather see a false stray than miss a real one.
    """
    entries: List[SourceEntry] = []
    with open(path, encoding="utf-8", errors="replace") as f:
        if path.endswith(".sources"):
            for para in Deb822.iter_paragraphs(f, use_apt_pkg=False):
                if para.get("Enabled", "yes").strip().lower() == "no":
                    continue
                kind = para.get("Types", "deb").strip()
                for uri in para.get("URIs", "").split():
                    entries.append(SourceEntry(path, kind, uri))
        else:
            for line in f:
                line = line.split("#", 1)[0].strip()
                m = _ONE_LINE_ENTRY.match(line)
                if m:
                    entries.append(SourceEntry(path, m.group(1), m.group(2)))
    return entries


def uri_points_at(uri: str, repo_root: str) -> bool:
    for prefix in ("file://", "file:"):
        if uri.startswith(prefix):
            return os.path.normpath(uri[len(prefix):]) == os.path.normpath(repo_root)
    return False


class SourceSet:
    """The active APT source entries under one apt config directory."""

    def __init__(self, entries: List[SourceEntry]):
        self.entries = list(entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @classmethod
    def scan(cls, apt_etc_dir: str) -> "SourceSet":
        files: List[str] = []
        main_list = os.path.join(apt_etc_dir, "sources.list")
        if os.path.lexists(main_list):
            files.append(main_list)
        for dirpath, dirnames, filenames in os.walk(os.path.join(apt_etc_dir, "sources.list.d")):
            dirnames.sort()
            files.extend(os.path.join(dirpath, fn) for fn in sorted(filenames))

        entries: List[SourceEntry] = []
        for path in files:
            try:
                entries.extend(parse_source_file(path))
            except OSError as e:
                # can't prove it's harmless, so it counts as a stray
                entries.append(SourceEntry(path, "unreadable", str(e)))
        return cls(entries)

    def pointing_at(self, repo_root: str) -> List[SourceEntry]:
        return [e for e in self.entries if e.kind != "unreadable" and uri_points_at(e.uri, repo_root)]

    def strays(self, repo_root: str) -> List[SourceEntry]:
        return [e for e in self.entries if e.kind == "unreadable" or not uri_points_at(e.uri, repo_root)]


class SwitchState(enum.Enum):
    ACTIVE = "active"
    QUARANTINED = "quarantined"
    SWITCHED = "switched"
    VERIFIED = "verified"
    FAILED = "failed"


class SourceSwitch:
    """
    Move a host from whatever APT sources it has to exactly one local source.

        ACTIVE -> QUARANTINED -> SWITCHED -> VERIFIED
                                         \\-> FAILED

    quarantine():   every sources file is MOVED into a timestamped directory.
                    Nothing is edited in place and nothing is deleted.
    write_source(): the single `deb [trusted=yes] file:<repo> ./` line.
    verify():       guard (no stray entry may remain) then a refresh against
                    that one source must succeed.

    Each step may only be taken from its own starting state. Any failure
    lands in FAILED and raises; there is no way back to ACTIVE from here
    except an operator restoring the quarantine directory by hand.
    """

    def __init__(self, repo_root: str, apt_etc_dir: str = APT_ETC_DIR,
                 stamp: Optional[str] = None, trusted: bool = True,
                 log: Callable[[str], None] = print):
        self.repo_root = repo_root
        self.apt_etc_dir = apt_etc_dir
        self.sources_list = os.path.join(apt_etc_dir, "sources.list")
        self.sources_dir = os.path.join(apt_etc_dir, "sources.list.d")
        self.quarantine_dir = os.path.join(apt_etc_dir, f"sources.backup.{stamp or utc_stamp()}")
        self.trusted = trusted
        self.log = log
        self.state = SwitchState.ACTIVE
        self.previous: Optional[SourceSet] = None
        self.moved: List[str] = []
        self.unmoved: List[Tuple[str, str]] = []

    def _expect(self, state: SwitchState) -> None:
        if self.state is not state:
            raise SourceSwitchError(
                f"Source switch is {self.state.value}, this step needs {state.value}.",
                self.quarantine_dir)

    def _fail(self, error: SourceSwitchError) -> SourceSwitchError:
        self.state = SwitchState.FAILED
        self.log(f"[!] source switch FAILED: {error}")
        return error

    def quarantine(self) -> List[str]:
        self._expect(SwitchState.ACTIVE)
        self.previous = SourceSet.scan(self.apt_etc_dir)
        self.log(f"[i] {len(self.previous)} active source entr(y/ies) before quarantine:")
        for e in self.previous:
            self.log(f"    {e.kind} {e.uri}  ({e.origin})")
        try:
            os.mkdir(self.quarantine_dir, 0o755)
        except FileExistsError:
            raise self._fail(SourceSwitchError(
                f"Quarantine directory {self.quarantine_dir} already exists; refusing to reuse it. "
                f"Nothing was moved.", self.quarantine_dir))

        moves: List[Tuple[str, str]] = []
        if os.path.lexists(self.sources_list):
            moves.append((self.sources_list, os.path.join(self.quarantine_dir, "sources.list")))
        if os.path.isdir(self.sources_dir):
            target_dir = os.path.join(self.quarantine_dir, "sources.list.d")
            try:
                os.mkdir(target_dir, 0o755)
            except OSError as e:
                raise self._fail(SourceSwitchError(
                    f"Could not create {target_dir}: {e}. Nothing was moved.", self.quarantine_dir))
            try:
                names = sorted(os.listdir(self.sources_dir))
            except OSError as e:
                names = []
                self.unmoved.append((self.sources_dir, str(e)))
            moves.extend((os.path.join(self.sources_dir, n), os.path.join(target_dir, n)) for n in names)

        for src, dst in moves:
            try:
                shutil.move(src, dst)
                self.moved.append(src)
            except OSError as e:
                # left for the guard to catch
                self.unmoved.append((src, str(e)))
                self.log(f"[!] could not quarantine {src}: {e}")

        self.state = SwitchState.QUARANTINED
        self.log(f"[i] {len(self.moved)} source file(s) moved to {self.quarantine_dir}")
        return self.moved

    def write_source(self) -> str:
        self._expect(SwitchState.QUARANTINED)
        entry = flat_repo.source_entry(self.repo_root, trusted=self.trusted)
        try:
            with open(self.sources_list, "x", encoding="utf-8") as f:
                f.write(entry + "\n")
        except FileExistsError:
            raise self._fail(SourceSwitchError(
                f"{self.sources_list} is still present after quarantine; refusing to edit it in place.",
                self.quarantine_dir))
        except OSError as e:
            raise self._fail(SourceSwitchError(
                f"Could not write {self.sources_list}: {e}", self.quarantine_dir))
        self.state = SwitchState.SWITCHED
        self.log(f"[i] wrote '{entry}' to {self.sources_list}")
        return entry

    def check_guard(self) -> None:
        """Fail unless exactly one active entry exists and it is the staged repo."""
        self._expect(SwitchState.SWITCHED)
        current = SourceSet.scan(self.apt_etc_dir)
        strays = current.strays(self.repo_root)
        ours = current.pointing_at(self.repo_root)
        if strays or len(ours) != 1:
            details = "\n  ".join(f"{e.origin}: {e.kind} {e.uri}" for e in strays) or "(none)"
            if self.unmoved:
                details += "\nCould not be moved:\n  " + "\n  ".join(f"{p}: {err}" for p, err in self.unmoved)
            raise self._fail(SourceSwitchError(
                f"Stray APT sources still present after quarantine "
                f"({len(ours)} local entr(y/ies), {len(strays)} stray):\n  {details}\nAborting.",
                self.quarantine_dir))

    def verify(self, refresh: Callable[[], bool]) -> None:
        self.check_guard()
        if not refresh():
            raise self._fail(VerificationError(
                f"Could not load an index from {self.repo_root}, the only APT source. "
                f"No upgrade was attempted.", self.quarantine_dir))
        self.state = SwitchState.VERIFIED
        self.log(f"[i] APT verified against the sole source {self.repo_root}")


##############################################################################
# Upgrade driver
##############################################################################

class StepResult(NamedTuple):
    label: str
    ok: bool
    best_effort: bool


class AptDriver:
    """Runs apt and friends against the (already verified) local source."""

    DPKG_OPTIONS = ["-o", "Dpkg::Options::=--force-confold", "-o", "Dpkg::Options::=--force-confdef"]

    def __init__(self, repo_root: str, lists_dir: str = APT_LISTS_DIR,
                 runner: Runner = run_command, log: Optional[RunLog] = None):
        self.repo_root = repo_root
        self.lists_dir = lists_dir
        self.runner = runner
        self.log = log or RunLog()

    def _run(self, cmd: List[str]) -> flat_repo.CommandResult:
        return self.runner(cmd, env=flat_repo.noninteractive_env(), on_line=self.log.output)

    def step(self, label: str, cmd: List[str], best_effort: bool = False) -> StepResult:
        self.log(label)
        result = self._run(cmd)
        if not result.ok:
            suffix = " (best-effort, continuing)" if best_effort else ""
            self.log(f"[!] {label} failed: {result.last_line()}{suffix}")
        return StepResult(label, result.ok, best_effort)

    def clear_lists(self) -> None:
        if not os.path.isdir(self.lists_dir):
            return
        for name in os.listdir(self.lists_dir):
            if name == "lock":
                continue
            _remove(os.path.join(self.lists_dir, name))

    def refresh_indexes(self) -> bool:
        """
        Drop every cached index, then update. Success means apt-get update
        exited 0 AND `apt-cache policy` shows an index loaded from our repo:
        an update that "succeeds" with zero usable sources is not success.
        """
        self.clear_lists()
        if not self.step("apt-get clean", ["apt-get", "clean"]).ok:
            return False
        if not self.step("apt-get update (local repo only)", ["apt-get", "update"]).ok:
            return False
        policy = self.runner(["apt-cache", "policy"])
        if not policy.ok or self.repo_root not in policy.stdout.decode("utf-8", "replace"):
            self.log(f"[!] apt-cache policy does not list {self.repo_root}; the index did not load")
            return False
        return True

    def full_upgrade(self, label: str) -> StepResult:
        return self.step(label, ["apt-get", "-y"] + self.DPKG_OPTIONS + ["full-upgrade"])

    def install(self, packages: List[str], label: str) -> StepResult:
        return self.step(label, ["apt-get", "-y", "install"] + list(packages), best_effort=True)

    def autoremove(self) -> StepResult:
        return self.step("[9/10] autoremove --purge", ["apt-get", "-y", "autoremove", "--purge"])


def run_upgrade(driver: AptDriver, kernel_packages: List[str],
                desktop_meta: Optional[str]) -> List[StepResult]:
    """Only ever called after SourceSwitch reached VERIFIED."""
    steps = [
        driver.full_upgrade("[4/10] full-upgrade pass 1"),
        driver.full_upgrade("[5/10] full-upgrade pass 2 (settle)"),
    ]
    if kernel_packages:
        steps.append(driver.install(kernel_packages, f"[6/10] Ensuring {' '.join(kernel_packages)}"))
    if desktop_meta:
        steps.append(driver.install([desktop_meta], f"[7/10] Ensuring {desktop_meta} meta (ignored if absent in repo)"))

    # initramfs/grub: best-effort, their absence doesn't corrupt repo or source state
    steps.append(driver.step("[8/10] Rebuilding initramfs (all)",
                             ["update-initramfs", "-u", "-k", "all"], best_effort=True))
    steps.append(driver.step("[8/10] Refreshing GRUB", ["update-grub"], best_effort=True))

    driver.log("[9/10] Final local-only update + upgrade to align with repo")
    steps.append(StepResult("final local-only update", driver.refresh_indexes(), False))
    steps.append(driver.full_upgrade("[9/10] final full-upgrade"))
    steps.append(driver.autoremove())
    return steps


##############################################################################
# Report
##############################################################################

def installed_kernels(runner: Runner = run_command) -> List[Tuple[str, str]]:
    result = runner(["dpkg-query", "-W", "-f", "${db:Status-Abbrev}\\t${Package}\\t${Version}\\n",
                     "linux-image-*"])
    kernels = []
    for line in result.stdout.decode("utf-8", "replace").splitlines():
        parts = line.split("\t")
        if len(parts) == 3 and parts[0].startswith("ii"):
            kernels.append((parts[1], parts[2]))
    return kernels


def report_upgrade(log: RunLog, steps: List[StepResult], switch: SourceSwitch,
                   runner: Runner = run_command) -> None:
    log("[10/10] Installed kernel images:")
    for name, version in installed_kernels(runner):
        log.output(f"  {name}  {version}")

    log.output("")
    log.output("Active APT source:")
    for entry in SourceSet.scan(switch.apt_etc_dir):
        log.output(f"  {entry.kind} {entry.uri}  ({entry.origin})")

    failed = [s for s in steps if not s.ok]
    if failed:
        log.output("")
        log.output("Steps that failed:")
        for s in failed:
            log.output(f"  {s.label}{' (best-effort)' if s.best_effort else ''}")

    log.output("")
    log.output(f"Previous APT sources: {switch.quarantine_dir}")
    if log.path:
        log.output(f"Upgrade done. Reboot to load the new kernel. Log: {log.path}")
    else:
        log.output("Upgrade done. Reboot to load the new kernel.")


##############################################################################
# Pipeline
##############################################################################

def install(search_root: str, staging_dir: str = STAGING_DIR, apt_etc_dir: str = APT_ETC_DIR,
            lists_dir: str = APT_LISTS_DIR, kernel_packages: Optional[List[str]] = None,
            desktop_meta: Optional[str] = DEFAULT_DESKTOP_META, runner: Runner = run_command,
            log: Optional[RunLog] = None, stamp: Optional[str] = None) -> int:
    """
    The whole installer pipeline. Raises OfflineRepoError subclasses for the
    fail-closed stages; returns the exit status otherwise.
    """
    log = log or RunLog()
    if kernel_packages is None:
        kernel_packages = list(DEFAULT_KERNEL_PACKAGES)

    src = discover_repo(search_root, log, staging_dir)
    log(f"[0/10] Repo source: {src}")

    log(f"[1/10] Staging repo to {staging_dir}")
    staged = RepoStager(staging_dir, log).stage(src)

    log("[2/10] Quarantining all existing APT sources")
    switch = SourceSwitch(staged, apt_etc_dir, stamp=stamp, log=log)
    switch.quarantine()
    switch.write_source()

    log("[3/10] apt-get update (local repo only)")
    driver = AptDriver(staged, lists_dir, runner, log)
    switch.verify(driver.refresh_indexes)

    steps = run_upgrade(driver, kernel_packages, desktop_meta)
    report_upgrade(log, steps, switch, runner)

    if any(not s.ok and not s.best_effort for s in steps):
        log("[!] Upgrade finished with failed steps; see the log above.")
        return EXIT_UPGRADE_INCOMPLETE
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Offline OS upgrade from a flat file: repository, with APT switched to local-only.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument('--search-root', default=os.getcwd(),
                        help='Where to look for the flat repo (default: current directory).\n'
                             'An existing --staging-dir copy is used only when no other repo is found.')
    parser.add_argument('--staging-dir', default=STAGING_DIR,
                        help=f'Where the repo is staged for APT (default: {STAGING_DIR}).')
    parser.add_argument('--kernel-packages', nargs='*', default=DEFAULT_KERNEL_PACKAGES,
                        help='Kernel/identity packages to ensure after the upgrade.')
    parser.add_argument('--desktop-meta', default=DEFAULT_DESKTOP_META,
                        help='Desktop meta package to ensure ("" to skip).')
    parser.add_argument('--log-dir', default=LOG_DIR,
                        help=f'Directory for the run log (default: {LOG_DIR}).')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if os.geteuid() != 0:
        print("Run as root (sudo)", file=sys.stderr)
        return 1

    stamp = utc_stamp()
    os.makedirs(args.log_dir, exist_ok=True)
    log = RunLog(os.path.join(args.log_dir, f"offline-upgrade-{stamp}.log"))
    try:
        flat_repo.require_tools(REQUIRED_TOOLS)
        return install(
            args.search_root,
            staging_dir=args.staging_dir,
            kernel_packages=args.kernel_packages,
            desktop_meta=args.desktop_meta or None,
            log=log,
            stamp=stamp,
        )
    except OfflineRepoError as e:
        log(f"[!] {e}")
        log(f"[!] Log: {log.path}")
        return e.exit_code
    finally:
        log.close()


if __name__ == "__main__":
    sys.exit(main())
