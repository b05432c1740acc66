"""
Tar helpers for copying files to and from containers.
"""
import io
import os
import tarfile
from typing import Iterable, Optional


def tar_path(host_path: str) -> bytes:
    """
    Archives ``host_path``: the contents of a directory relative to it, or a single
    file under its base name.
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        if os.path.isdir(host_path):
            for entry in sorted(os.listdir(host_path)):
                tar.add(os.path.join(host_path, entry), arcname=entry)
        else:
            tar.add(host_path, arcname=os.path.basename(host_path))
    return buffer.getvalue()



def _join(chunks: Iterable[bytes]) -> io.BytesIO:
    buffer = io.BytesIO()
    for chunk in chunks:
        buffer.write(chunk)
    buffer.seek(0)
    return buffer


def read_first_file(chunks: Iterable[bytes]) -> bytes:
    """Content of the first regular file in a tar stream."""
    with tarfile.open(fileobj=_join(chunks), mode="r") as tar:
        for member in tar.getmembers():
            if member.isfile():
                return tar.extractfile(member).read()
    return b""


def extract_archive(chunks: Iterable[bytes], dest_dir: str, rebase: Optional[tuple] = None) -> None:
    """
    Extracts a tar stream into ``dest_dir``.

    :param rebase: ``(old_name, new_name)`` replacing the top level entry name, used
        when the source was a symlink resolved to another name.
    """
    with tarfile.open(fileobj=_join(chunks), mode="r") as tar:
        members = tar.getmembers()
        if rebase:
            old, new = rebase
            for member in members:
                if member.name == old or member.name.startswith(old + "/"):
                    member.name = new + member.name[len(old):]
        tar.extractall(dest_dir, members=members, filter="data")
