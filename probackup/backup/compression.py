"""
Compression codecs for backup artifacts.

Supports:
- gzip: single-stream compression of one file (.gz)
- zip: archive compression of a file or a directory tree (.zip)

Directory trees are gzipped through a tar step; that is handled by the
ArchiveManager, not by the codecs themselves.
"""

import gzip
import os
import shutil
import zipfile
from pathlib import Path
from typing import Optional

from .models import utcnow


GZIP_MAGIC = b'\x1f\x8b'
ZIP_MAGIC = b'PK\x03\x04'

_EXTENSIONS = {
    'zip': 'zip',
    'gzip': 'tar.gz',
}


class CompressionError(Exception):
    """Raised when compressing or decompressing an artifact fails."""
    pass


def _read_magic(path: str, length: int) -> bytes:
    try:
        with open(path, 'rb') as f:
            return f.read(length)
    except OSError:
        return b''


def _remove_path(path: str):
    if os.path.isdir(path):
        shutil.rmtree(path, ignore_errors=True)
    elif os.path.exists(path):
        os.remove(path)


class GzipCodec:
    """
    Single-stream gzip codec.

    Only regular files can be compressed; directories must be tarred first.
    """

    name = 'gzip'
    extension = 'gz'

    def __init__(self, level: int = 6, keep_original: bool = False):
        """
        Initialize gzip codec.

        Args:
            level: Compression level 1-9 (default: 6)
            keep_original: Default for keeping the source after an operation
        """
        self.level = level
        self.keep_original = keep_original

    def supports(self, path: str) -> bool:
        if path.lower().endswith('.gz'):
            return True
        return os.path.isfile(path) and _read_magic(path, 2) == GZIP_MAGIC

    def compress(self, source: str, target: Optional[str] = None, keep_original: Optional[bool] = None) -> str:
        """
        Gzip a single file.

        Args:
            source: File to compress
            target: Output path (default: source + '.gz')
            keep_original: Keep the source file (default: codec setting)

        Returns:
            Path of the compressed file

        Raises:
            CompressionError: If source is not a file or compression fails
        """
        keep = self.keep_original if keep_original is None else keep_original
        if not os.path.isfile(source):
            raise CompressionError(f"Gzip can only compress regular files: {source}")

        target = target or f"{source}.gz"
        try:
            with open(source, 'rb') as src, gzip.open(target, 'wb', compresslevel=self.level) as dst:
                shutil.copyfileobj(src, dst)
        except Exception as e:
            _remove_path(target)
            raise CompressionError(f"Failed to gzip {source}: {e}")

        if not keep:
            os.remove(source)
        return target

    def decompress(self, source: str, target: Optional[str] = None, keep_original: Optional[bool] = None) -> str:
        """
        Gunzip a file.

        Args:
            source: .gz file
            target: Output file, or an existing directory to write into
                (default: source without the .gz suffix)
            keep_original: Keep the .gz file (default: codec setting)

        Returns:
            Path of the decompressed file
        """
        keep = self.keep_original if keep_original is None else keep_original
        if not os.path.isfile(source):
            raise CompressionError(f"Archive not found: {source}")

        stripped = source[:-3] if source.lower().endswith('.gz') else f"{source}.out"
        if target is None:
            target = stripped
        elif os.path.isdir(target):
            target = os.path.join(target, os.path.basename(stripped))

        try:
            with gzip.open(source, 'rb') as src, open(target, 'wb') as dst:
                shutil.copyfileobj(src, dst)
        except Exception as e:
            _remove_path(target)
            raise CompressionError(f"Failed to gunzip {source}: {e}")

        if not keep:
            os.remove(source)
        return target


class ZipCodec:
    """
    Zip archive codec.

    A directory is stored by its contents so extraction does not produce a
    redundant top-level folder.
    """

    name = 'zip'
    extension = 'zip'

    def __init__(self, level: int = 6, keep_original: bool = False):
        self.level = level
        self.keep_original = keep_original

    def supports(self, path: str) -> bool:
        if path.lower().endswith('.zip'):
            return True
        return os.path.isfile(path) and _read_magic(path, 4) == ZIP_MAGIC

    def compress(self, source: str, target: Optional[str] = None, keep_original: Optional[bool] = None) -> str:
        """
        Zip a file or a directory tree.

        Args:
            source: File or directory
            target: Output path (default: source + '.zip')
            keep_original: Keep the source (default: codec setting)

        Returns:
            Path of the created archive
        """
        keep = self.keep_original if keep_original is None else keep_original
        source_path = Path(source)
        if not source_path.exists():
            raise CompressionError(f"Path does not exist: {source}")

        target = target or f"{str(source_path).rstrip(os.sep)}.zip"
        try:
            with zipfile.ZipFile(target, 'w', zipfile.ZIP_DEFLATED, compresslevel=self.level) as zipf:
                if source_path.is_file():
                    zipf.write(source_path, source_path.name)
                else:
                    for item in sorted(source_path.rglob('*')):
                        if item.resolve() == Path(target).resolve():
                            continue
                        relative_path = item.relative_to(source_path)
                        if item.is_dir():
                            zipf.write(item, f"{relative_path.as_posix()}/")
                        elif item.is_file():
                            zipf.write(item, relative_path.as_posix())
        except Exception as e:
            _remove_path(target)
            raise CompressionError(f"Failed to create zip archive: {e}")

        if not keep:
            _remove_path(source)
        return target

    def decompress(self, source: str, target: Optional[str] = None, keep_original: Optional[bool] = None) -> str:
        """
        Extract a zip archive.

        Args:
            source: .zip file
            target: Directory to extract into (default: source without .zip)
            keep_original: Keep the archive (default: codec setting)

        Returns:
            The extracted file when the archive holds exactly one file,
            otherwise the extraction directory
        """
        keep = self.keep_original if keep_original is None else keep_original
        if not os.path.isfile(source):
            raise CompressionError(f"Archive not found: {source}")

        target = target or strip_archive_extension(source)
        created = not os.path.exists(target)
        try:
            os.makedirs(target, exist_ok=True)
            with zipfile.ZipFile(source, 'r') as zipf:
                members = [m for m in zipf.namelist() if not m.endswith('/')]
                zipf.extractall(target)
        except Exception as e:
            if created:
                _remove_path(target)
            raise CompressionError(f"Failed to extract zip archive {source}: {e}")

        if not keep:
            os.remove(source)

        if len(members) == 1 and '/' not in members[0]:
            return os.path.join(target, members[0])
        return target


def generate_archive_filename(name: str, codec_name: str) -> str:
    """
    Generate a standardized archive filename.

    Format: {name}_{YYYYmmdd_HHMMSS}.{zip|tar.gz}

    Args:
        name: Logical backup name
        codec_name: 'zip' or 'gzip'

    Returns:
        Filename (without path)
    """
    timestamp = utcnow().strftime('%Y%m%d_%H%M%S')
    extension = _EXTENSIONS.get(codec_name, 'tar.gz')

    safe_name = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in name
    )

    return f"{safe_name}_{timestamp}.{extension}"


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles the multi-part .tar.gz extension.
    """
    lowered = filename.lower()
    if lowered.endswith('.tar.gz'):
        return filename[:-7]
    elif lowered.endswith('.zip'):
        return filename[:-4]
    elif lowered.endswith('.tar'):
        return filename[:-4]
    elif lowered.endswith('.gz'):
        return filename[:-3]
    else:
        return os.path.splitext(filename)[0]


def has_compression_extension(path: str) -> bool:
    lowered = path.lower()
    return lowered.endswith('.zip') or lowered.endswith('.gz')


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an artifact in bytes.

    Directories report the sum of their files.

    Raises:
        CompressionError: If the path doesn't exist or cannot be accessed
    """
    try:
        if os.path.isdir(archive_path):
            return sum(p.stat().st_size for p in Path(archive_path).rglob('*') if p.is_file())
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except Exception as e:
        raise CompressionError(f"Failed to get archive size: {e}")
