"""
Tar-based archive codec.

Packs a list of files and directory trees into one compressed tar archive
and unpacks it again under a destination root. Compression prefers the
highest-ratio format the interpreter supports and falls back down the
chain when a compressor is unavailable on the host:

    zst (tarfile zstd support) -> xz (lzma) -> gz (zlib)

Extraction never writes outside the destination. Member names that are
absolute or contain parent segments reject the whole archive before
anything is written; symlinks pointing outside the destination are not
materialized.
"""

from __future__ import annotations

import gzip
import hashlib
import logging
import os
import posixpath
import tarfile
import zlib
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from keepsake.errors import KeepsakeError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192

# Preference order, highest ratio first.
FORMATS = ("zst", "xz", "gz")

_CORRUPTION_ERRORS: tuple[type[BaseException], ...] = (
    tarfile.TarError,
    EOFError,
    zlib.error,
    gzip.BadGzipFile,
)

try:
    import lzma

    _CORRUPTION_ERRORS += (lzma.LZMAError,)
except ImportError:
    pass

try:
    from compression import zstd

    _CORRUPTION_ERRORS += (zstd.ZstdError,)
except ImportError:
    pass


class ArchiveError(KeepsakeError):
    """Base exception for archive codec errors."""

    pass


class CompressionFailure(ArchiveError):
    """The archive stream could not be read or written."""

    pass


class CorruptArchive(ArchiveError):
    """The decompressor or tar reader detected invalid framing."""

    pass


class UnsafeArchiveError(CorruptArchive):
    """An archive member would be written outside the destination root."""

    pass


@dataclass
class ArchiveMember:
    """
    One top-level entry to add to an archive.

    Attributes:
        source: File or directory on disk.
        arcname: Name of the entry inside the archive.
    """

    source: Path
    arcname: str


@dataclass
class PackResult:
    """Result of packing one archive."""

    archive_name: str
    archive_path: Path
    format: str
    source_size_bytes: int
    archive_size_bytes: int
    digest: str


@dataclass
class UnpackResult:
    """Counts of non-directory members extracted and skipped."""

    extracted: int = 0
    skipped: int = 0


def available_formats() -> list[str]:
    """Formats the running interpreter can write, in preference order."""
    return [fmt for fmt in FORMATS if fmt in tarfile.TarFile.OPEN_METH]


def format_chain(compression: str = "auto") -> list[str]:
    """
    Formats to try for a compression setting.

    "auto" walks the full chain. A named format starts the chain at that
    format and falls back to the lower-ratio ones after it.

    Raises:
        ValueError: If compression is not "auto" or a known format.
    """
    if compression == "auto":
        return list(FORMATS)
    if compression not in FORMATS:
        raise ValueError(
            f"Unknown compression '{compression}'. Valid options: auto, {', '.join(FORMATS)}"
        )
    return list(FORMATS[FORMATS.index(compression) :])


def file_digest(path: Path) -> str:
    """Compute the SHA-256 hex digest of a file."""
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            hasher.update(chunk)
    return hasher.hexdigest()


def pack(
    members: list[ArchiveMember],
    archive_dir: Path,
    base_name: str,
    compression: str = "auto",
    check_cancelled: Callable[[], None] | None = None,
) -> PackResult:
    """
    Write members into <archive_dir>/<base_name>.tar.<ext>.

    The archive is written to a partial file and renamed into place once
    complete, so a failed pack never leaves a truncated archive behind.

    Args:
        members: Files and directories to add, recursively.
        archive_dir: Directory to write the archive into.
        base_name: Archive file name without extension.
        compression: "auto" or a format name from FORMATS.
        check_cancelled: Called before each file is added; may raise to
            abort the pack.

    Returns:
        PackResult describing the written archive.

    Raises:
        CompressionFailure: If no compressor is usable or writing fails.
    """
    archive_dir = Path(archive_dir)
    last_error: Exception | None = None

    for fmt in format_chain(compression):
        archive_name = f"{base_name}.tar.{fmt}"
        archive_path = archive_dir / archive_name
        partial_path = archive_dir / f".{archive_name}.partial"
        source_size = 0

        def account(info: tarfile.TarInfo) -> tarfile.TarInfo:
            nonlocal source_size
            if check_cancelled is not None:
                check_cancelled()
            if info.isreg():
                source_size += info.size
            return info

        try:
            with tarfile.open(partial_path, f"w:{fmt}") as tar:
                for member in members:
                    tar.add(str(member.source), arcname=member.arcname, filter=account)
        except tarfile.CompressionError as e:
            logger.info(f"Compressor '{fmt}' unavailable, falling back: {e}")
            last_error = e
            partial_path.unlink(missing_ok=True)
            continue
        except (OSError, tarfile.TarError) as e:
            partial_path.unlink(missing_ok=True)
            raise CompressionFailure(
                f"Failed to write archive {archive_name}: {e}",
                [str(m.source) for m in members],
            ) from e
        except BaseException:
            partial_path.unlink(missing_ok=True)
            raise

        try:
            os.replace(partial_path, archive_path)
            digest = file_digest(archive_path)
            archive_size = archive_path.stat().st_size
        except OSError as e:
            partial_path.unlink(missing_ok=True)
            raise CompressionFailure(
                f"Failed to finalize archive {archive_name}: {e}", [str(archive_path)]
            ) from e

        logger.debug(
            f"Packed {archive_name}: {source_size:,} bytes -> {archive_size:,} bytes"
        )
        return PackResult(
            archive_name=archive_name,
            archive_path=archive_path,
            format=fmt,
            source_size_bytes=source_size,
            archive_size_bytes=archive_size,
            digest=digest,
        )

    raise CompressionFailure(
        f"No usable compressor for {base_name} (tried {', '.join(format_chain(compression))})"
        + (f": {last_error}" if last_error else ""),
        [str(m.source) for m in members],
    )


def _check_member_name(name: str, archive_path: Path) -> str:
    """Return the normalized member name or raise UnsafeArchiveError."""
    has_drive = len(name) > 1 and name[0].isalpha() and name[1] == ":" and (
        len(name) == 2 or name[2] in "/\\"
    )
    if name.startswith(("/", "\\")) or has_drive:
        raise UnsafeArchiveError(
            f"Archive member has an absolute path: {name}", [str(archive_path)]
        )
    parts = name.replace("\\", "/").split("/")
    if ".." in parts:
        raise UnsafeArchiveError(
            f"Archive member escapes the destination: {name}", [str(archive_path)]
        )
    return posixpath.normpath(name.replace("\\", "/"))


def _rename_root(name: str, root_name: str | None) -> str:
    if not root_name:
        return name
    head, sep, rest = name.partition("/")
    if head in ("", "."):
        return name
    return f"{root_name}{sep}{rest}"


def _symlink_escapes(name: str, linkname: str) -> bool:
    if posixpath.isabs(linkname):
        return True
    resolved = posixpath.normpath(posixpath.join(posixpath.dirname(name), linkname))
    return resolved == ".." or resolved.startswith("../")


def unpack(
    archive_path: Path,
    destination: Path,
    overwrite: bool = False,
    root_name: str | None = None,
) -> UnpackResult:
    """
    Extract an archive under destination.

    Every member is validated before anything is written. With overwrite
    False, members whose target already exists are counted as skipped and
    left untouched.

    Args:
        archive_path: Archive to read; compression is auto-detected.
        destination: Root directory to extract into (created if missing).
        overwrite: Replace existing files.
        root_name: If given, the first path component of every member is
            renamed to this, so a tree archived as "Documents" can be
            restored as another directory name.

    Returns:
        UnpackResult with extracted and skipped counts.

    Raises:
        UnsafeArchiveError: If a member would escape the destination.
        CorruptArchive: If the archive framing is invalid.
        CompressionFailure: If the archive cannot be read or written.
    """
    archive_path = Path(archive_path)
    destination = Path(destination)
    result = UnpackResult()

    try:
        with tarfile.open(archive_path, "r:*") as tar:
            members = tar.getmembers()

            planned: list[tarfile.TarInfo] = []
            for member in members:
                name = _rename_root(_check_member_name(member.name, archive_path), root_name)
                if name == ".":
                    continue
                member.name = name
                if member.islnk():
                    linkname = _check_member_name(member.linkname, archive_path)
                    member.linkname = _rename_root(linkname, root_name)
                elif member.issym() and _symlink_escapes(name, member.linkname):
                    logger.warning(
                        f"Not restoring symlink {name} -> {member.linkname}: "
                        "target is outside the destination"
                    )
                    result.skipped += 1
                    continue
                planned.append(member)

            destination.mkdir(parents=True, exist_ok=True)
            for member in planned:
                target = destination / member.name
                if not member.isdir() and (target.exists() or target.is_symlink()):
                    if not overwrite:
                        result.skipped += 1
                        continue
                    if target.is_symlink() or (target.is_file() and member.islnk()):
                        target.unlink()
                tar.extract(member, path=destination, filter="data")
                if not member.isdir():
                    result.extracted += 1

    except tarfile.FilterError as e:
        raise UnsafeArchiveError(
            f"Archive member rejected: {e}", [str(archive_path)]
        ) from e
    except _CORRUPTION_ERRORS as e:
        raise CorruptArchive(
            f"Archive is corrupt or truncated: {archive_path.name}: {e}",
            [str(archive_path)],
        ) from e
    except OSError as e:
        raise CompressionFailure(
            f"Failed to extract {archive_path.name}: {e}", [str(archive_path)]
        ) from e

    logger.debug(
        f"Unpacked {archive_path.name} into {destination}: "
        f"{result.extracted} extracted, {result.skipped} skipped"
    )
    return result
