"""Configuration settings for the RainlyHTTP file server."""
import argparse
import os
from dataclasses import dataclass
from typing import List, Optional

# Listener
LISTEN_HOST = "172.16.0.1"
LISTEN_PORT = 80

# Storage directory (uploads and downloads share it)
DOWNLOAD_DIR = "/home/download"

# Upload limits
MAX_UPLOAD_SIZE = 1024 * 1024 * 10240  # 10GB
UPLOAD_PASSWORD = "Rainly520"

# Streaming chunk size for disk reads/writes
CHUNK_SIZE = 8192  # 8KB

# Log output directory
LOG_DIR = "./logs"

ENV_PREFIX = "RAINLY_"


def _env(name: str, default):
    return os.getenv(ENV_PREFIX + name, default)


def _parse_int(name: str, value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {value!r}")


@dataclass(frozen=True)
class ServerConfig:
    host: str
    port: int
    download_dir: str
    max_upload_size: int
    upload_password: str
    chunk_size: int = CHUNK_SIZE

    def __post_init__(self):
        if self.max_upload_size <= 0:
            raise ValueError("Maximum upload size must be positive")
        if self.chunk_size <= 0:
            raise ValueError("Chunk size must be positive")
        # Frozen, so normalize through object.__setattr__
        object.__setattr__(self, "download_dir", os.path.abspath(self.download_dir))

    @property
    def listen_addr(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def from_env(cls) -> 'ServerConfig':
        """Create ServerConfig from module defaults and RAINLY_* environment overrides."""
        return cls(
            host=_env("LISTEN_HOST", LISTEN_HOST),
            port=_parse_int("LISTEN_PORT", _env("LISTEN_PORT", LISTEN_PORT)),
            download_dir=_env("DOWNLOAD_DIR", DOWNLOAD_DIR),
            max_upload_size=_parse_int("MAX_UPLOAD_SIZE", _env("MAX_UPLOAD_SIZE", MAX_UPLOAD_SIZE)),
            upload_password=_env("UPLOAD_PASSWORD", UPLOAD_PASSWORD),
        )

    @classmethod
    def from_args(cls, argv: Optional[List[str]] = None) -> 'ServerConfig':
        """Create ServerConfig from the environment, then apply command line flags."""
        base = cls.from_env()
        parser = argparse.ArgumentParser(description='RainlyHTTP file upload/download server')
        parser.add_argument('--host', type=str, default=base.host,
                            help='Address to listen on')
        parser.add_argument('--port', type=int, default=base.port,
                            help='Port to listen on')
        parser.add_argument('--dir', type=str, default=base.download_dir,
                            help='Storage directory for uploaded and downloadable files')
        args = parser.parse_args(argv)

        return cls(
            host=args.host,
            port=args.port,
            download_dir=args.dir,
            max_upload_size=base.max_upload_size,
            upload_password=base.upload_password,
            chunk_size=base.chunk_size,
        )
