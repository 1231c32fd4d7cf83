import errno
import gzip
import hashlib
import os
import sys

import pytest

import flat_repo
from flat_repo import ArchiveFile, ArchiveReadError


def test_canonical_filenames_without_epoch():
    assert flat_repo.canonical_filenames("bash", "5.1-6", "amd64") == ["bash_5.1-6_amd64.deb"]


def test_canonical_filenames_with_epoch():
    names = flat_repo.canonical_filenames("python3-apt", "1:2.4.0", "amd64")
    assert names[0] == "python3-apt_2.4.0_amd64.deb"
    assert "python3-apt_1%3a2.4.0_amd64.deb" in names
    assert "python3-apt_1:2.4.0_amd64.deb" in names


def test_read_control_fields(tmp_path, make_deb):
    path = make_deb(str(tmp_path / "a_1.0_amd64.deb"), "a", "1.0", "amd64")
    assert flat_repo.read_control_fields(path) == {
        "Package": "a", "Version": "1.0", "Architecture": "amd64"}


def test_read_control_fields_missing_field_is_empty(tmp_path, make_deb):
    path = make_deb(str(tmp_path / "x.deb"), "x", "1", fields={"Package": "x", "Version": "1"})
    assert flat_repo.read_control_fields(path)["Architecture"] == ""


def test_read_control_fields_rejects_garbage(tmp_path):
    path = tmp_path / "broken.deb"
    path.write_bytes(b"this is not an ar archive")
    with pytest.raises(ArchiveReadError):
        flat_repo.read_control_fields(str(path))


def test_archive_file_load_fail_soft(tmp_path):
    path = tmp_path / "broken.deb"
    path.write_bytes(b"junk")
    archive = ArchiveFile.load(str(path), with_hash=True, fail_soft=True)
    assert archive.identity == ("", "", "")
    assert archive.size == 4
    assert archive.sha256 == hashlib.sha256(b"junk").hexdigest()


def test_archive_file_load_reads_identity(tmp_path, make_deb):
    path = make_deb(str(tmp_path / "b.deb"), "b", "2:3.0-1", "all")
    archive = ArchiveFile.load(path)
    assert archive.identity == ("b", "2:3.0-1", "all")
    assert archive.sha256 is None


@pytest.mark.parametrize("embedded,wanted,expected", [
    ("1.0", "1.0", True),
    ("0:1.0", "1.0", True),
    ("1.0.1", "1.0", False),
    ("1:1.0", "1.0", False),
    ("", "1.0", False),
])
def test_same_identity_uses_debian_versions(embedded, wanted, expected):
    fields = {"Package": "a", "Version": embedded, "Architecture": "amd64"}
    assert flat_repo.same_identity(fields, "a", wanted, "amd64") is expected


def test_same_identity_checks_name_and_arch():
    fields = {"Package": "a", "Version": "1.0", "Architecture": "amd64"}
    assert not flat_repo.same_identity(fields, "b", "1.0", "amd64")
    assert not flat_repo.same_identity(fields, "a", "1.0", "i386")


def test_sha256_file(tmp_path):
    path = tmp_path / "blob"
    data = os.urandom(3 * 1024 * 1024 + 17)
    path.write_bytes(data)
    assert flat_repo.sha256_file(str(path)) == hashlib.sha256(data).hexdigest()


@pytest.mark.parametrize("link", [True, False])
def test_place_no_clobber_never_overwrites(tmp_path, link):
    src = tmp_path / "src.deb"
    src.write_bytes(b"new")
    dest = tmp_path / "dest.deb"

    assert flat_repo.place_no_clobber(str(src), str(dest), link=link) is True
    assert dest.read_bytes() == b"new"

    other = tmp_path / "other.deb"
    other.write_bytes(b"other")
    assert flat_repo.place_no_clobber(str(other), str(dest), link=link) is False
    assert dest.read_bytes() == b"new"


def test_place_no_clobber_copies_when_hard_links_unsupported(tmp_path, monkeypatch):
    def no_link(src, dst):
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    monkeypatch.setattr(flat_repo.os, "link", no_link)
    src = tmp_path / "src.deb"
    src.write_bytes(b"payload")
    dest = tmp_path / "dest.deb"
    assert flat_repo.place_no_clobber(str(src), str(dest), link=True) is True
    assert dest.read_bytes() == b"payload"


def test_find_index_prefers_plain_packages(repo_dir):
    assert flat_repo.find_index(repo_dir) is None
    assert not flat_repo.has_repo_layout(repo_dir)

    open(os.path.join(repo_dir, "Packages.gz"), "wb").close()
    assert flat_repo.find_index(repo_dir).endswith("Packages.gz")
    assert flat_repo.has_repo_layout(repo_dir)

    open(os.path.join(repo_dir, "Packages"), "wb").close()
    assert flat_repo.find_index(repo_dir).endswith(os.sep + "Packages")


def test_read_index_gz(tmp_path):
    text = ("Package: a\nVersion: 1.0\nFilename: ./pool/a_1.0_amd64.deb\n\n"
            "Package: b\nVersion: 2.0\nFilename: ./pool/b_2.0_amd64.deb\n")
    path = tmp_path / "Packages.gz"
    path.write_bytes(gzip.compress(text.encode()))
    stanzas = flat_repo.read_index(str(path))
    assert [s["Package"] for s in stanzas] == ["a", "b"]


def test_iter_pool_archives_walks_nested_pool(repo_dir, make_deb):
    pool = flat_repo.pool_dir(repo_dir)
    make_deb(os.path.join(pool, "main", "z", "z_1_amd64.deb"), "z", "1")
    make_deb(os.path.join(pool, "a_1_amd64.deb"), "a", "1")
    open(os.path.join(pool, "README"), "w").close()
    found = [os.path.relpath(p, pool) for p in flat_repo.iter_pool_archives(pool)]
    assert found == ["a_1_amd64.deb", os.path.join("main", "z", "z_1_amd64.deb")]


def test_source_entry():
    assert flat_repo.source_entry("/opt/offline-repo") == "deb [trusted=yes] file:/opt/offline-repo ./"
    assert flat_repo.source_entry("/opt/offline-repo", trusted=False) == "deb file:/opt/offline-repo ./"


def test_require_tools_lists_every_missing_tool(monkeypatch):
    monkeypatch.setattr(flat_repo.shutil, "which", lambda name: None if name.startswith("no-") else "/bin/" + name)
    flat_repo.require_tools(["ls"])
    with pytest.raises(flat_repo.MissingToolError) as exc:
        flat_repo.require_tools(["ls", "no-a", "no-b"])
    assert exc.value.tools == ["no-a", "no-b"]
    assert exc.value.exit_code == 3


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
def test_run_command_captures_streams_separately():
    result = flat_repo.run_command(["sh", "-c", "echo out; echo err >&2; exit 3"])
    assert result.returncode == 3
    assert result.stdout == b"out\n"
    assert result.stderr == b"err\n"
    assert not result.ok
    assert result.last_line() == "err"


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
def test_run_command_streams_lines():
    lines = []
    result = flat_repo.run_command(["sh", "-c", "echo one; echo two >&2"], on_line=lines.append)
    assert result.ok
    assert sorted(lines) == ["one", "two"]


def test_run_command_missing_program():
    result = flat_repo.run_command(["definitely-not-a-real-program-xyz"])
    assert result.returncode == 127
