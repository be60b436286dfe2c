"""
Archive coordination: picks a codec and manages intermediate files.

Directory trees compressed with gzip go through a tar step first, since a
single-stream codec cannot compress a tree directly.
"""

import logging
import os
import shutil
import tarfile
import tempfile
from types import MappingProxyType
from typing import Mapping, Optional

from .compression import CompressionError


logger = logging.getLogger(__name__)

KNOWN_CODECS = ('zip', 'gzip')


class UnsupportedCompression(CompressionError):
    """Raised for a codec name the system does not know."""
    pass


class CompressionAdapterUnavailable(CompressionError):
    """Raised for a known codec name with no codec registered."""
    pass


class ArchiveManager:
    """
    Centralizes compress/decompress decisions.

    Codecs are injected once as a name -> codec mapping.
    """

    def __init__(self, codecs: Mapping[str, object], temp_dir: Optional[str] = None):
        """
        Initialize archive manager.

        Args:
            codecs: Mapping of codec name ('zip', 'gzip') to codec instance
            temp_dir: Parent directory for scratch directories (default: system temp)
        """
        self.codecs = MappingProxyType(dict(codecs))
        self.temp_dir = temp_dir

    def _codec(self, name: str):
        if name not in KNOWN_CODECS:
            raise UnsupportedCompression(
                f"Unsupported compression type: {name}. Valid options: {list(KNOWN_CODECS)}"
            )
        codec = self.codecs.get(name)
        if codec is None:
            raise CompressionAdapterUnavailable(f"No compression adapter registered for: {name}")
        return codec

    def _scratch_dir(self) -> str:
        if self.temp_dir:
            os.makedirs(self.temp_dir, exist_ok=True)
        return tempfile.mkdtemp(prefix='probackup_extract_', dir=self.temp_dir)

    def compress(self, source: str, target_path: str, codec_name: str, remove_source: bool = False) -> str:
        """
        Compress a file or directory.

        Args:
            source: File or directory to compress
            target_path: Desired output path
            codec_name: 'zip' or 'gzip'
            remove_source: Remove the source once compression succeeded

        Returns:
            Path of the compressed artifact

        Raises:
            UnsupportedCompression: Unknown codec name
            CompressionAdapterUnavailable: Known codec with nothing registered
            CompressionError: If compression fails
        """
        codec = self._codec(codec_name)

        if codec_name == 'zip':
            return codec.compress(source, target_path, keep_original=not remove_source)

        if os.path.isdir(source):
            return self._compress_directory_gzip(codec, source, target_path, remove_source)

        return codec.compress(source, target_path, keep_original=not remove_source)

    def _compress_directory_gzip(self, codec, source: str, target_path: str, remove_source: bool) -> str:
        if target_path.lower().endswith('.tar.gz'):
            final_path = target_path
        elif target_path.lower().endswith('.tar'):
            final_path = f"{target_path}.gz"
        else:
            final_path = f"{target_path}.tar.gz"
        tar_path = final_path[:-3]

        logger.debug(f"Creating intermediate tar {tar_path} from {source}")
        try:
            try:
                with tarfile.open(tar_path, 'w') as tar:
                    for child in sorted(os.listdir(source)):
                        tar.add(os.path.join(source, child), arcname=child, recursive=True)
            except Exception as e:
                raise CompressionError(f"Failed to create tar archive: {e}")

            result = codec.compress(tar_path, final_path, keep_original=True)
        finally:
            if os.path.exists(tar_path):
                os.remove(tar_path)

        if remove_source:
            shutil.rmtree(source, ignore_errors=True)
        return result

    def decompress(self, archive_path: str, target_path: Optional[str] = None, keep_original: bool = True) -> str:
        """
        Decompress an artifact if its extension is recognized.

        Args:
            archive_path: Artifact to decompress
            target_path: Output location (a scratch directory is created if None
                for zip and tar.gz)
            keep_original: Keep the archive after extraction

        Returns:
            Path of the decompressed artifact, or archive_path unchanged when
            the format is not recognized
        """
        lowered = archive_path.lower()

        if lowered.endswith('.zip'):
            codec = self._codec('zip')
            scratch = None
            if target_path is None:
                target_path = scratch = self._scratch_dir()
            try:
                return codec.decompress(archive_path, target_path, keep_original=keep_original)
            except Exception:
                if scratch:
                    shutil.rmtree(scratch, ignore_errors=True)
                raise

        if lowered.endswith('.tar.gz'):
            codec = self._codec('gzip')
            scratch = None
            if target_path is None:
                target_path = scratch = self._scratch_dir()
            try:
                self._extract_tar_gz(codec, archive_path, target_path)
            except Exception:
                if scratch:
                    shutil.rmtree(scratch, ignore_errors=True)
                raise
            if not keep_original:
                os.remove(archive_path)
            return target_path

        if lowered.endswith('.gz'):
            codec = self._codec('gzip')
            return codec.decompress(archive_path, target_path, keep_original=keep_original)

        return archive_path

    @staticmethod
    def _extract_tar_gz(codec, archive_path: str, target_path: str):
        os.makedirs(target_path, exist_ok=True)
        tar_path = os.path.join(target_path, os.path.basename(archive_path)[:-3])
        try:
            codec.decompress(archive_path, tar_path, keep_original=True)
            try:
                with tarfile.open(tar_path, 'r') as tar:
                    tar.extractall(target_path, filter='data')
            except Exception as e:
                raise CompressionError(f"Failed to extract tar archive: {e}")
        finally:
            if os.path.exists(tar_path):
                os.remove(tar_path)

    @staticmethod
    def detect_compression_type(path: str) -> Optional[str]:
        """Return 'zip', 'gzip' or None based on the file extension."""
        lowered = path.lower()
        if lowered.endswith('.zip'):
            return 'zip'
        if lowered.endswith('.gz'):
            return 'gzip'
        return None
