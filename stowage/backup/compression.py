"""
Compressors for backup archives.

A compressor packages a working directory into a single archive file and
unpacks it again. The archive filename depends only on the backup name, so
restore and delete can find the remote object from the name alone.

Supported formats:
- zip: Standard zip compression
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)

File modes survive a round trip, with one exception. Tar extraction uses the
"data" filter where available, which grants the owner read and write access
and clears setuid, setgid and sticky bits and group/other write permission
on restored files.
"""

import os
import stat
import tarfile
import zipfile
from pathlib import Path

from .errors import CompressionError, DecompressionError


class Compressor:
    """Base class for archive formats."""

    identifier = None
    extension = None

    def generate_filename(self, name: str) -> str:
        """
        Canonical archive filename for a backup name.

        Args:
            name: Backup name

        Returns:
            Filename (without path)
        """
        return f"{name}.{self.extension}"

    def compress(self, source_dir: str, target_dir: str) -> str:
        """
        Package the contents of source_dir into one archive under target_dir.

        The archive is named after the basename of source_dir (the backup
        name) and its members are relative to source_dir.

        Args:
            source_dir: Directory to package
            target_dir: Directory the archive is written to

        Returns:
            Full path to the created archive file

        Raises:
            CompressionError: If archive creation fails
        """
        source = Path(source_dir)
        if not source.is_dir():
            raise CompressionError(f"Source directory does not exist: {source_dir}")

        archive_path = Path(target_dir) / self.generate_filename(source.name)

        try:
            archive_path.parent.mkdir(parents=True, exist_ok=True)
            self._write_archive(source, archive_path)
            return str(archive_path)
        except Exception as e:
            # Clean up partial archive on failure
            if archive_path.exists():
                try:
                    archive_path.unlink()
                except OSError:
                    pass
            raise CompressionError(f"Failed to create archive: {e}") from e

    def decompress(self, archive_path: str, target_dir: str) -> str:
        """
        Extract an archive so the original tree is rebuilt under target_dir.

        Args:
            archive_path: Archive produced by compress()
            target_dir: Directory to extract into (created if missing)

        Returns:
            target_dir

        Raises:
            DecompressionError: If the archive is missing, corrupt or unsafe
        """
        if not os.path.isfile(archive_path):
            raise DecompressionError(f"Archive not found: {archive_path}")

        target = Path(target_dir)

        try:
            target.mkdir(parents=True, exist_ok=True)
            self._extract_archive(Path(archive_path), target)
            return str(target)
        except DecompressionError:
            raise
        except Exception as e:
            raise DecompressionError(f"Failed to extract archive {archive_path}: {e}") from e

    def _write_archive(self, source: Path, archive_path: Path):
        raise NotImplementedError

    def _extract_archive(self, archive_path: Path, target: Path):
        raise NotImplementedError


def _check_member_path(target: Path, member_name: str):
    """
    Reject archive members that would land outside the target directory.

    Raises:
        DecompressionError: On absolute paths or parent traversal
    """
    if os.path.isabs(member_name) or member_name.startswith(('/', '\\')):
        raise DecompressionError(f"Unsafe absolute path in archive: {member_name}")

    resolved_target = target.resolve()
    destination = (resolved_target / member_name).resolve()

    if destination != resolved_target and resolved_target not in destination.parents:
        raise DecompressionError(f"Unsafe path in archive: {member_name}")


class TarCompressor(Compressor):
    """TAR archive with optional compression."""

    # format -> (extension, write mode)
    FORMATS = {
        'tar.gz': ('tar.gz', 'w:gz'),
        'tar.bz2': ('tar.bz2', 'w:bz2'),
        'tar.xz': ('tar.xz', 'w:xz'),
        'none': ('tar', 'w'),
    }

    def __init__(self, compression_format: str = 'tar.gz'):
        if compression_format not in self.FORMATS:
            raise ValueError(
                f"Invalid tar format: {compression_format}. "
                f"Valid options: {list(self.FORMATS.keys())}"
            )
        self.identifier = compression_format
        self.extension, self.mode = self.FORMATS[compression_format]

    def _write_archive(self, source: Path, archive_path: Path):
        with tarfile.open(archive_path, self.mode) as tar:
            for item in sorted(source.iterdir()):
                tar.add(item, arcname=item.name, recursive=True)

    def _extract_archive(self, archive_path: Path, target: Path):
        with tarfile.open(archive_path, 'r:*') as tar:
            members = tar.getmembers()

            for member in members:
                _check_member_path(target, member.name)

                if member.issym() or member.islnk():
                    link_base = os.path.dirname(member.name) if member.issym() else ''
                    _check_member_path(target, os.path.join(link_base, member.linkname))
                elif not (member.isfile() or member.isdir()):
                    raise DecompressionError(f"Unsupported member type in archive: {member.name}")

            if hasattr(tarfile, 'data_filter'):
                tar.extractall(target, members=members, filter='data')
            else:
                tar.extractall(target, members=members)


class ZipCompressor(Compressor):
    """ZIP archive (deflate); unix permission bits are stored and restored."""

    identifier = 'zip'
    extension = 'zip'

    def _write_archive(self, source: Path, archive_path: Path):
        with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
            for item in sorted(source.rglob('*')):
                relative_path = item.relative_to(source).as_posix()

                if item.is_dir():
                    # Keep empty directories, with their mode
                    zipf.writestr(zipfile.ZipInfo.from_file(item, relative_path), '')
                elif item.is_file():
                    zipf.write(item, relative_path)

    def _extract_archive(self, archive_path: Path, target: Path):
        with zipfile.ZipFile(archive_path, 'r') as zipf:
            infos = zipf.infolist()
            for info in infos:
                _check_member_path(target, info.filename)

            zipf.extractall(target)

            # Directories last and deepest first, so a read-only directory
            # does not block changing the modes below it
            ordered = sorted(infos, key=lambda i: (i.is_dir(), -i.filename.count('/')))
            for info in ordered:
                mode = stat.S_IMODE(info.external_attr >> 16)
                if mode:
                    os.chmod(target / info.filename, mode)


COMPRESSORS = {
    'zip': ZipCompressor,
    'tar.gz': lambda: TarCompressor('tar.gz'),
    'tar.bz2': lambda: TarCompressor('tar.bz2'),
    'tar.xz': lambda: TarCompressor('tar.xz'),
    'none': lambda: TarCompressor('none'),
}


def get_compressor(identifier: str) -> Compressor:
    """
    Factory function to create the compressor for an identifier.

    Args:
        identifier: One of 'zip', 'tar.gz', 'tar.bz2', 'tar.xz', 'none'

    Returns:
        Compressor instance

    Raises:
        ValueError: If identifier is invalid
    """
    if identifier not in COMPRESSORS:
        raise ValueError(
            f"Invalid compression format: {identifier}. "
            f"Valid options: {list(COMPRESSORS.keys())}"
        )
    return COMPRESSORS[identifier]()


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
