"""
Filesystem source adapter.

Copies configured paths into a staging directory inside the request's output
directory, honoring exclusion globs. The staging directory is the raw
artifact; the orchestrator archives it afterwards.
"""

import logging
import os
import shutil
import time
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, List

from .adapters import SourceAdapter, SourceError
from .compression import get_archive_size
from .models import (
    BackupOutcome,
    BackupRequest,
    FilesystemOptions,
    PathSpec,
    RestoreOptions,
    utcnow,
)


logger = logging.getLogger(__name__)


def should_exclude(path: Path, root: Path, patterns: Iterable[str]) -> bool:
    """
    Check if a path should be excluded based on exclude patterns.

    A pattern matches the entry name, the path relative to the source root,
    or the full path. A leading '**/' matches at any depth.

    Args:
        path: Path to check
        root: Source root the relative path is computed from
        patterns: Glob patterns

    Returns:
        True if path matches any pattern
    """
    path_name = path.name
    try:
        relative = path.relative_to(root).as_posix()
    except ValueError:
        relative = path_name

    for pattern in patterns:
        pattern = pattern.rstrip('/')
        if not pattern:
            continue
        if fnmatch(path_name, pattern) or fnmatch(relative, pattern) or fnmatch(str(path), pattern):
            return True
        if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
            return True

    return False


class FilesystemAdapter(SourceAdapter):
    """Backs up and restores directory trees and files."""

    supported_types = ('filesystem', 'files')
    requires_connection = False

    def __init__(self, default_paths=()):
        """
        Initialize filesystem adapter.

        Args:
            default_paths: Paths used when a request does not name any. Plain
                strings or {'path': ..., 'exclude': [...]} mappings.
        """
        self.default_paths = FilesystemOptions.from_mapping({'paths': list(default_paths)}).paths

    def _paths_for(self, request: BackupRequest) -> List[PathSpec]:
        paths = FilesystemOptions.from_mapping(request.options).paths
        return paths or list(self.default_paths)

    def validate(self, request: BackupRequest) -> List[str]:
        errors = []
        if not request.output_path:
            errors.append('Output path is required')

        paths = self._paths_for(request)
        if not paths:
            errors.append('At least one path must be configured for filesystem backups')
        for spec in paths:
            if not os.path.exists(os.path.expanduser(spec.path)):
                errors.append(f"Path does not exist: {spec.path}")

        return errors

    def backup(self, request: BackupRequest) -> BackupOutcome:
        started = time.monotonic()
        created_at = utcnow()
        paths = self._paths_for(request)
        staging = Path(request.output_path) / f"{request.name}_{created_at.strftime('%Y%m%d_%H%M%S')}"

        logger.info(f"Staging {len(paths)} path(s) into {staging}")
        try:
            staging.mkdir(parents=True, exist_ok=False)
            if len(paths) == 1:
                self._copy_path(paths[0], staging, request.exclusions, by_contents=True)
            else:
                for spec in paths:
                    self._copy_path(spec, staging, request.exclusions, by_contents=False)
        except (OSError, SourceError) as e:
            shutil.rmtree(staging, ignore_errors=True)
            return self._fail(f"Filesystem backup failed: {e}", started)

        return BackupOutcome(
            success=True,
            file_path=str(staging),
            file_size=get_archive_size(str(staging)),
            created_at=created_at,
            duration=time.monotonic() - started,
            metadata={'paths': [spec.path for spec in paths]},
        )

    def _copy_path(self, spec: PathSpec, staging: Path, exclusions: List[str], by_contents: bool):
        source = Path(spec.path).expanduser().resolve()
        patterns = list(spec.exclude) + list(exclusions or [])

        if not source.exists():
            raise SourceError(f"Path does not exist: {spec.path}")

        if source.is_file():
            if not should_exclude(source, source.parent, patterns):
                shutil.copy2(source, staging / source.name)
            return

        dest = staging if by_contents else staging / source.name

        def ignore_patterns(directory, names):
            return [
                name for name in names
                if should_exclude(Path(directory) / name, source, patterns)
            ]

        try:
            shutil.copytree(source, dest, symlinks=False, ignore=ignore_patterns, dirs_exist_ok=True)
        except PermissionError as e:
            raise SourceError(f"Permission denied accessing {spec.path}: {e}")

    def restore(self, artifact_path: str, options: RestoreOptions) -> bool:
        """
        Copy a restored tree (or a single file) into options.target_dir.
        """
        if not options.target_dir:
            logger.error('A target directory is required to restore a filesystem backup')
            return False

        source = Path(artifact_path)
        target = Path(options.target_dir)
        if not source.exists():
            logger.error(f"Artifact not found: {artifact_path}")
            return False

        target.mkdir(parents=True, exist_ok=True)
        if source.is_dir():
            shutil.copytree(source, target, dirs_exist_ok=True)
        else:
            shutil.copy2(source, target / source.name)

        logger.info(f"Restored {artifact_path} into {target}")
        return True
