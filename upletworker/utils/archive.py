"""tar.gz helpers for algorithm, model and data blobs."""

import io
import os
import tarfile
import zlib
from pathlib import Path
from typing import BinaryIO, List, Union

from upletworker.utils.errors import FatalTaskError


def targz_directory(src: Union[str, Path]) -> bytes:
    """Pack the contents of ``src`` (not the directory itself) into tar.gz bytes."""
    src = Path(src)
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for entry in sorted(src.iterdir()):
            tar.add(str(entry), arcname=entry.name)
    return buffer.getvalue()


def _safe_members(tar: tarfile.TarFile, dest: Path) -> List[tarfile.TarInfo]:
    members = []
    for member in tar.getmembers():
        if member.issym() or member.islnk() or member.isdev():
            raise FatalTaskError(f"archive member {member.name} is a link or device")
        target = (dest / member.name).resolve()
        if target != dest and dest not in target.parents:
            raise FatalTaskError(f"archive member {member.name} escapes the extraction directory")
        members.append(member)
    return members


def extract_targz(reader: BinaryIO, dest: Union[str, Path]) -> None:
    """Unpack a tar.gz stream into ``dest``, refusing links and path escapes."""
    dest = Path(dest).resolve()
    os.makedirs(dest, exist_ok=True)
    try:
        with tarfile.open(fileobj=reader, mode="r:gz") as tar:
            members = _safe_members(tar, dest)
            tar.extractall(str(dest), members=members)
    except (tarfile.TarError, EOFError, zlib.error) as e:
        raise FatalTaskError(f"blob is not a valid tar.gz archive: {e}") from e
