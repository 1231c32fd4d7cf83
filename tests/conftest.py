"""
Shared test fixtures.

make_deb writes genuine (tiny) .deb archives: an ar file holding
debian-binary, control.tar.gz and data.tar.gz, so python-debian reads real
control data instead of a mock.
"""

import io
import os
import tarfile
from pathlib import Path
from typing import Callable, Dict, Optional

import pytest


def _ar_member(name: str, data: bytes) -> bytes:
    header = (
        f"{name:<16}"
        f"{0:<12}"
        f"{0:<6}"
        f"{0:<6}"
        f"{'100644':<8}"
        f"{len(data):<10}"
    ).encode("ascii") + b"`\n"
    return header + data + (b"\n" if len(data) % 2 else b"")


def _tar_gz(files: Dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def write_deb(path: str, package: str, version: str, arch: str = "amd64",
              payload: bytes = b"", fields: Optional[Dict[str, str]] = None) -> str:
    if fields is None:
        fields = {"Package": package, "Version": version, "Architecture": arch}
    control = "".join(f"{k}: {v}\n" for k, v in fields.items())
    control += "Maintainer: Test <test@example.com>\nDescription: test package\n"
    data_files = {"./usr/share/doc/payload": payload} if payload else {}
    archive = (
        b"!<arch>\n"
        + _ar_member("debian-binary", b"2.0\n")
        + _ar_member("control.tar.gz", _tar_gz({"./control": control.encode()}))
        + _ar_member("data.tar.gz", _tar_gz(data_files))
    )
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(archive)
    return path


@pytest.fixture
def make_deb() -> Callable[..., str]:
    """Return the .deb writer: make_deb(path, package, version, arch="amd64", payload=b"", fields=None)."""
    return write_deb


@pytest.fixture
def repo_dir(tmp_path: Path) -> str:
    """An empty repository directory with its pool/."""
    repo = tmp_path / "repo"
    (repo / "pool").mkdir(parents=True)
    return str(repo)


@pytest.fixture
def apt_etc(tmp_path: Path) -> str:
    """A fake /etc/apt with the usual mixed bag of sources."""
    etc = tmp_path / "etc-apt"
    (etc / "sources.list.d").mkdir(parents=True)
    (etc / "sources.list").write_text(
        "# main archive\n"
        "deb http://archive.ubuntu.com/ubuntu jammy main restricted\n"
        "# deb-src http://archive.ubuntu.com/ubuntu jammy main\n"
    )
    (etc / "sources.list.d" / "ppa.list").write_text(
        "deb [arch=amd64 signed-by=/usr/share/keyrings/x.gpg] https://ppa.example.com/x jammy main\n"
    )
    (etc / "sources.list.d" / "ubuntu.sources").write_text(
        "Types: deb\n"
        "URIs: http://security.ubuntu.com/ubuntu\n"
        "Suites: jammy-security\n"
        "Components: main\n"
    )
    return str(etc)


def write_flat_repo(repo: str, packages) -> str:
    """A flat repo with one archive per (name, version, arch) and a matching Packages index."""
    stanzas = []
    for name, version, arch in packages:
        rel = os.path.join("pool", f"{name}_{version}_{arch}.deb")
        path = write_deb(os.path.join(repo, rel), name, version, arch, payload=name.encode())
        stanzas.append(
            f"Package: {name}\nVersion: {version}\nArchitecture: {arch}\n"
            f"Filename: ./{rel}\nSize: {os.path.getsize(path)}\n"
        )
    os.makedirs(os.path.join(repo, "pool"), exist_ok=True)
    with open(os.path.join(repo, "Packages"), "w") as f:
        f.write("\n".join(stanzas))
    return repo


@pytest.fixture
def make_repo() -> Callable[..., str]:
    """Return the flat repo writer: make_repo(path, [(name, version, arch), ...])."""
    return write_flat_repo
