"""
Archive handling for backup artifacts.

Supports:
- tar.gz: Gzip compressed tar (default)
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)

Artifact names follow {environment}_backup_{YYYYMMDD}_{HHMMSS}.{ext}; the
embedded timestamp is the catalog's sort key and the retention key.
"""

import gzip
import os
import re
import tarfile
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple


class CompressionError(Exception):
    """Raised when archive creation or extraction fails."""
    pass


TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'

# Format to (extension, tarfile write mode)
FORMATS = {
    'tar.gz': ('tar.gz', 'w:gz'),
    'tar.bz2': ('tar.bz2', 'w:bz2'),
    'tar.xz': ('tar.xz', 'w:xz'),
    'none': ('tar', 'w'),
}

ARTIFACT_NAME_RE = re.compile(
    r'^(?P<environment>.+)_backup_(?P<date>\d{8})_(?P<time>\d{6})\.(?P<ext>tar(?:\.gz|\.bz2|\.xz)?)$'
)


def create_archive(source_dir: str, output_path: str, compression_format: str = 'tar.gz') -> str:
    """
    Pack a staging tree into a single archive.

    Top-level entries of source_dir become top-level entries of the archive,
    added in sorted order with ownership and times normalized so the same
    tree always yields the same archive bytes.

    Args:
        source_dir: Directory whose contents are archived
        output_path: Path where archive should be created (without extension)
        compression_format: One of 'tar.gz', 'tar.bz2', 'tar.xz', 'none'

    Returns:
        Full path to the created archive file

    Raises:
        CompressionError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if compression_format not in FORMATS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(FORMATS.keys())}"
        )

    source = Path(source_dir)
    if not source.is_dir():
        raise CompressionError(f"Staging directory does not exist: {source_dir}")

    extension, mode = FORMATS[compression_format]
    archive_path = f"{output_path}.{extension}"

    try:
        if compression_format == 'tar.gz':
            # Zero gzip header mtime and no file name, so equal trees give equal bytes
            with open(archive_path, 'wb') as raw, \
                    gzip.GzipFile(filename='', mode='wb', fileobj=raw, mtime=0) as gz, \
                    tarfile.open(fileobj=gz, mode='w') as tar:
                _add_tree(tar, source)
        else:
            with tarfile.open(archive_path, mode) as tar:
                _add_tree(tar, source)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                pass
        raise CompressionError(f"Failed to create archive: {e}")


def _add_tree(tar: tarfile.TarFile, source: Path):
    for item in sorted(source.rglob('*')):
        arcname = str(item.relative_to(source))
        tar.add(item, arcname=arcname, recursive=False, filter=_normalize_member)


def _normalize_member(tarinfo: tarfile.TarInfo) -> tarfile.TarInfo:
    tarinfo.uid = tarinfo.gid = 0
    tarinfo.uname = tarinfo.gname = ''
    tarinfo.mtime = 0
    return tarinfo


def extract_archive(archive_path: str, dest_dir: str) -> str:
    """
    Unpack an archive into dest_dir.

    Members with absolute paths, parent references or links are rejected.

    Returns:
        dest_dir

    Raises:
        CompressionError: If the archive is missing, corrupt or unsafe
    """
    if not os.path.isfile(archive_path):
        raise CompressionError(f"Archive not found: {archive_path}")

    dest = Path(dest_dir).resolve()
    dest.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(archive_path, 'r:*') as tar:
            members = tar.getmembers()
            for member in members:
                _check_member(member, dest)
            if hasattr(tarfile, 'data_filter'):
                tar.extractall(dest, members=members, filter='data')
            else:
                # Interpreters without extraction filters; members were vetted above
                tar.extractall(dest, members=members)
    except CompressionError:
        raise
    except (tarfile.TarError, EOFError, OSError) as e:
        raise CompressionError(f"Failed to extract archive {archive_path}: {e}")

    return str(dest)


def _check_member(member: tarfile.TarInfo, dest: Path):
    if member.issym() or member.islnk():
        raise CompressionError(f"Links are not allowed in backup archives: {member.name}")
    if not (member.isfile() or member.isdir()):
        raise CompressionError(f"Unsupported archive member type: {member.name}")

    target = (dest / member.name).resolve()
    if os.path.isabs(member.name) or (target != dest and dest not in target.parents):
        raise CompressionError(f"Unsafe path in archive: {member.name}")


def generate_archive_filename(environment: str, timestamp: datetime, compression_format: str = 'tar.gz') -> str:
    """
    Generate a standardized archive filename.

    Format: {environment}_backup_{YYYYMMDD_HHMMSS}.{ext}
    """
    extension = FORMATS.get(compression_format, FORMATS['tar.gz'])[0]

    # Sanitize environment (replace spaces and special chars with underscores)
    safe_environment = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in environment
    )

    return f"{safe_environment}_backup_{timestamp.strftime(TIMESTAMP_FORMAT)}.{extension}"


def parse_archive_filename(filename: str) -> Optional[Tuple[str, datetime]]:
    """
    Recover (environment, timestamp) from an artifact name.

    Accepts a bare name or a path/object key. Returns None for names that do
    not follow the artifact naming convention.
    """
    match = ARTIFACT_NAME_RE.match(os.path.basename(filename))
    if not match:
        return None

    try:
        timestamp = datetime.strptime(f"{match.group('date')}_{match.group('time')}", TIMESTAMP_FORMAT)
    except ValueError:
        return None

    return match.group('environment'), timestamp


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.xz
    """
    for extension in ('.tar.gz', '.tar.bz2', '.tar.xz', '.tar'):
        if filename.endswith(extension):
            return filename[:-len(extension)]
    return os.path.splitext(filename)[0]


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
