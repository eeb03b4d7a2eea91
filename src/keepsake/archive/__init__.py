"""
Archive codec.

Compressed tar archives with a compressor fallback chain, SHA-256 digests
and extraction confined to a destination root.

Usage:
    from keepsake.archive import ArchiveMember, pack, unpack

    result = pack([ArchiveMember(Path("~/Documents").expanduser(), "Documents")],
                  backup_dir, "documents")
    unpack(result.archive_path, Path.home(), overwrite=False)
"""

from keepsake.archive.codec import (
    FORMATS,
    ArchiveError,
    ArchiveMember,
    CompressionFailure,
    CorruptArchive,
    PackResult,
    UnpackResult,
    UnsafeArchiveError,
    available_formats,
    file_digest,
    format_chain,
    pack,
    unpack,
)

__all__ = [
    "FORMATS",
    "ArchiveMember",
    "PackResult",
    "UnpackResult",
    "available_formats",
    "file_digest",
    "format_chain",
    "pack",
    "unpack",
    # Exceptions
    "ArchiveError",
    "CompressionFailure",
    "CorruptArchive",
    "UnsafeArchiveError",
]
