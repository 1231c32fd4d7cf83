"""
Shared pieces of the flat offline repository format.

Both pipelines (build_offline_repo.py on the source host, repo_install.py on
the target host) talk about the same on-disk artifact:

    <repo-root>/
      pool/                    archive files, flat or nested
      Packages                 plain-text index (or Packages.gz)
      Packages.gz              optional compressed index
      Release                  optional, unsigned
      installed-packages.csv   audit inventory

Everything that must agree between the two sides lives here: layout names,
how we read an archive's embedded identity, how we hash, how we place files
into the pool without ever replacing one, and what the single local source
entry looks like.
"""

import errno
import gzip
import hashlib
import os
import shutil
import subprocess
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

from debian.deb822 import Packages
from debian.debfile import DebFile
from debian.debian_support import Version

POOL_DIRNAME = "pool"
PACKAGES_INDEX = "Packages"
PACKAGES_INDEX_GZ = "Packages.gz"
RELEASE_FILE = "Release"
INVENTORY_FILE = "installed-packages.csv"
INVENTORY_HEADER = ["Package", "Version", "Architecture", "Size", "Filename", "SHA256"]

ARCHIVE_SUFFIX = ".deb"
CONTROL_FIELDS = ("Package", "Version", "Architecture")

HASH_CHUNK = 1024 * 1024

# link(2) failures that mean "this filesystem can't do it", not "dest exists"
_NO_HARDLINK_ERRNOS = {errno.EXDEV, errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.EMLINK}

Identity = Tuple[str, str, str]


##############################################################################
# Errors
##############################################################################

class OfflineRepoError(RuntimeError):
    """
    Base for every condition that must stop a pipeline.

    Each subclass carries the process exit status the CLI returns for it, so
    operators (and wrapper scripts) can tell a missing tool apart from a
    failed source switch without parsing text.
    """
    exit_code = 1


class MissingToolError(OfflineRepoError):
    exit_code = 3

    def __init__(self, tools: List[str]):
        self.tools = list(tools)
        super().__init__(
            f"Missing required tool(s): {', '.join(self.tools)}. "
            f"Install them and run again; nothing has been changed."
        )


class ArchiveReadError(OfflineRepoError):
    """An archive could not be opened or has no readable control file."""


def require_tools(names: Iterable[str]) -> None:
    missing = [name for name in names if shutil.which(name) is None]
    if missing:
        raise MissingToolError(missing)


def default_jobs() -> int:
    return max(1, os.cpu_count() or 1)


##############################################################################
# Repository layout
##############################################################################

def pool_dir(repo_dir: str) -> str:
    return os.path.join(repo_dir, POOL_DIRNAME)


def find_index(repo_dir: str) -> Optional[str]:
    """
    Return the index file of a flat repository, or None.

    The plain `Packages` form wins over `Packages.gz` when both exist: it is
    what apt-ftparchive produced and the .gz is derived from it.
    """
    for name in (PACKAGES_INDEX, PACKAGES_INDEX_GZ):
        candidate = os.path.join(repo_dir, name)
        if os.path.isfile(candidate):
            return candidate
    return None


def has_repo_layout(repo_dir: str) -> bool:
    return os.path.isdir(pool_dir(repo_dir)) and find_index(repo_dir) is not None


def read_index(index_path: str) -> List[Packages]:
    """Parse a Packages or Packages.gz index into its stanzas."""
    opener = gzip.open if index_path.endswith(".gz") else open
    with opener(index_path, "rt", encoding="utf-8", errors="replace") as f:
        return list(Packages.iter_paragraphs(f, use_apt_pkg=False))


def iter_pool_archives(pool: str) -> List[str]:
    """All archive files under the pool, in sorted walk order."""
    found: List[str] = []
    for dirpath, dirnames, filenames in os.walk(pool):
        dirnames.sort()
        for fn in sorted(filenames):
            if fn.endswith(ARCHIVE_SUFFIX):
                found.append(os.path.join(dirpath, fn))
    return found


##############################################################################
# Archive identity
##############################################################################

def strip_epoch(version: str) -> str:
    return version.split(":", 1)[1] if ":" in version else version


def canonical_filenames(name: str, version: str, arch: str) -> List[str]:
    """
    Names under which an archive for (name, version, arch) is normally stored.

    dpkg-repack and the Debian archive drop the epoch: `foo_2.0-1_amd64.deb`.
    apt's download cache keeps it, URL-escaped: `foo_1%3a2.0-1_amd64.deb`.
    We also accept the literal `:` form, which a copy from a non-apt tool may
    have produced. The first entry is the name a fresh repack would get.
    """
    names = [f"{name}_{strip_epoch(version)}_{arch}{ARCHIVE_SUFFIX}"]
    if ":" in version:
        names.append(f"{name}_{version.replace(':', '%3a')}_{arch}{ARCHIVE_SUFFIX}")
        names.append(f"{name}_{version}_{arch}{ARCHIVE_SUFFIX}")
    return names


def read_control_fields(path: str) -> Dict[str, str]:
    """
    Read Package/Version/Architecture from the archive's embedded control file.

    This is the authoritative identity of an archive; filenames are only a
    hint. A missing field comes back as "" (the caller decides whether that
    matters). An archive that can't be opened at all raises ArchiveReadError.
    """
    try:
        deb = DebFile(path)
    except Exception as e:
        raise ArchiveReadError(f"Cannot open archive {path}: {e}")
    try:
        control = deb.debcontrol()
        return {field: (control.get(field) or "").strip() for field in CONTROL_FIELDS}
    except Exception as e:
        raise ArchiveReadError(f"Cannot read control data from {path}: {e}")
    finally:
        deb.close()


def same_identity(fields: Dict[str, str], name: str, version: str, arch: str) -> bool:
    """
    Compare embedded control fields against an expected identity.

    Versions are compared with Debian semantics, so "0:1.0" equals "1.0" but
    "1.0.1" never equals "1.0".
    """
    if fields.get("Package") != name or fields.get("Architecture") != arch:
        return False
    embedded = fields.get("Version")
    if not embedded:
        return False
    try:
        return Version(embedded) == Version(version)
    except ValueError:
        return embedded == version


def sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


class ArchiveFile:
    """
    One physical archive on disk.

    name/version/arch are read back from the archive itself. sha256 is only
    filled in when asked for, since the reconciliation engine never needs it
    and hashing a large pool is the expensive part of a build.
    """
    __slots__ = ("path", "name", "version", "arch", "size", "sha256")

    def __init__(self, path: str, name: str, version: str, arch: str,
                 size: int, sha256: Optional[str] = None):
        self.path = path
        self.name = name
        self.version = version
        self.arch = arch
        self.size = size
        self.sha256 = sha256

    @property
    def identity(self) -> Identity:
        return (self.name, self.version, self.arch)

    @classmethod
    def load(cls, path: str, with_hash: bool = False, fail_soft: bool = False) -> "ArchiveFile":
        """
        With fail_soft=True an unreadable control file yields empty identity
        fields instead of ArchiveReadError. I/O errors on size/hash still raise.
        """
        try:
            fields = read_control_fields(path)
        except ArchiveReadError:
            if not fail_soft:
                raise
            fields = {field: "" for field in CONTROL_FIELDS}
        return cls(
            path=path,
            name=fields["Package"],
            version=fields["Version"],
            arch=fields["Architecture"],
            size=os.path.getsize(path),
            sha256=sha256_file(path) if with_hash else None,
        )


##############################################################################
# Non-clobbering placement
##############################################################################

def place_no_clobber(src: str, dest: str, link: bool = False) -> bool:
    """
    Put `src` at `dest` unless something already lives at `dest`.

    Returns True when the file was placed, False when `dest` already existed.
    An existing destination is NEVER replaced: the pool is append-only and
    several workers may race for the same name.

    With link=True we try a hard link first (instant, and atomic against a
    concurrent writer). Filesystems without hard links (vfat/exfat sticks are
    common for offline transfer) or a cross-device src fall back to a copy
    into an O_EXCL-created destination.
    """
    if link:
        try:
            os.link(src, dest)
            return True
        except FileExistsError:
            return False
        except OSError as e:
            if e.errno not in _NO_HARDLINK_ERRNOS:
                raise

    try:
        fout = open(dest, "xb")
    except FileExistsError:
        return False
    try:
        with fout, open(src, "rb") as fin:
            shutil.copyfileobj(fin, fout, HASH_CHUNK)
        shutil.copystat(src, dest)
    except OSError:
        os.unlink(dest)
        raise
    return True


##############################################################################
# Source entry
##############################################################################

def source_entry(repo_root: str, trusted: bool = True) -> str:
    """The one-line apt source declaring a flat file: repository."""
    options = "[trusted=yes] " if trusted else ""
    return f"deb {options}file:{repo_root} ./"


##############################################################################
# Running collaborators
##############################################################################

class CommandResult(NamedTuple):
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def last_line(self) -> str:
        """Last non-empty line of stderr (or stdout), for one-line diagnostics."""
        for stream in (self.stderr, self.stdout):
            lines = [l for l in stream.decode("utf-8", "replace").splitlines() if l.strip()]
            if lines:
                return lines[-1].strip()
        return f"exit status {self.returncode}"


Runner = Callable[..., CommandResult]


def run_command(
    cmd: List[str],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    on_line: Optional[Callable[[str], None]] = None,
) -> CommandResult:
    """
    Run one external collaborator.

    Without `on_line`, stdout and stderr are captured separately (index
    generation must never get warnings mixed into the index text). With
    `on_line`, stderr is merged into stdout and every line is handed to the
    callback as it arrives, which is how the installer tees apt output into
    its log.

    A program that isn't installed surfaces as exit status 127 rather than an
    exception, mirroring what a shell would report.
    """
    try:
        if on_line is None:
            proc = subprocess.run(cmd, cwd=cwd, env=env,
                                  stdout=subprocess.PIPE, stderr=subprocess.PIPE)
            return CommandResult(proc.returncode, proc.stdout, proc.stderr)

        data = bytearray()
        with subprocess.Popen(cmd, cwd=cwd, env=env,
                              stdout=subprocess.PIPE, stderr=subprocess.STDOUT) as process:
            for raw_line in process.stdout:
                data.extend(raw_line)
                on_line(raw_line.decode("utf-8", "replace").rstrip("\n"))
        return CommandResult(process.returncode, bytes(data), b"")
    except FileNotFoundError as e:
        return CommandResult(127, b"", str(e).encode())


def noninteractive_env() -> Dict[str, str]:
    env = dict(os.environ)
    env["DEBIAN_FRONTEND"] = "noninteractive"
    return env
