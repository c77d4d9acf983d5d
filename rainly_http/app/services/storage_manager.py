import os
from pathlib import Path
import stat as stat_module
import aiofiles
import aiofiles.os
import config
from logger_config import setup_logger

logger = setup_logger()


class StorageError(Exception):
    """Base class for storage directory failures."""


class PathTraversalError(StorageError):
    """The requested name resolves outside the storage directory."""


class FileCreateError(StorageError):
    """The destination file could not be created or truncated."""


class FileCopyError(StorageError):
    """Copying the uploaded content into the destination failed."""


class StorageManager:
    def __init__(self, data_dir: Path, chunk_size: int = config.CHUNK_SIZE):
        self.data_dir = Path(os.path.normpath(os.path.abspath(data_dir)))
        self.chunk_size = chunk_size

    async def initialize(self):
        """Create the storage directory (and parents) if it doesn't exist."""
        logger.info("Initializing storage manager...")
        self.data_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"File storage directory: {self.data_dir}")

    @staticmethod
    def sanitize_filename(filename: str) -> str:
        """Trim surrounding whitespace and strip every path separator."""
        filename = filename.strip()
        return filename.replace("/", "").replace("\\", "")

    def resolve(self, filename: str) -> Path:
        """Join a name onto the storage directory, refusing anything that escapes it.

        The check is lexical: the joined path is normalized and must be strictly
        below the storage directory (the directory itself is refused too).
        """
        root = str(self.data_dir)
        candidate = os.path.normpath(os.path.join(root, filename))
        try:
            inside = os.path.commonpath([root, candidate]) == root
        except ValueError:
            # Different drives on Windows
            inside = False
        if not inside or candidate == root:
            raise PathTraversalError(f"Path {filename!r} escapes the storage directory")
        return Path(candidate)

    async def stat_file(self, path: Path) -> os.stat_result:
        """Stat a regular file; directories are reported as missing files."""
        result = await aiofiles.os.stat(path)
        if stat_module.S_ISDIR(result.st_mode):
            raise IsADirectoryError(f"{path} is a directory")
        return result

    async def save_upload(self, destination: Path, upload) -> int:
        """Create (or truncate) destination and stream the upload into it.

        Returns the number of bytes written. A failed copy leaves the partial
        file in place.
        """
        try:
            dst = await aiofiles.open(destination, 'wb')
        except (OSError, ValueError) as e:
            raise FileCreateError(str(e)) from e

        written = 0
        try:
            # Save content using chunks for memory efficiency
            while chunk := await upload.read(self.chunk_size):
                await dst.write(chunk)
                written += len(chunk)
        except OSError as e:
            raise FileCopyError(str(e)) from e
        finally:
            try:
                await dst.close()
            except OSError as e:
                raise FileCopyError(str(e)) from e

        logger.debug(f"Wrote {written} bytes to {destination}")
        return written
