"""Configuration settings for the upload server."""
import argparse
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# Storage limits
MAX_UPLOAD_SIZE = 2 * 1024 * 1024 * 1024  # 2GB
CHUNK_SIZE = 64 * 1024  # 64KB
MULTIPART_OVERHEAD_ALLOWANCE = 64 * 1024
MAX_OPTIONS_LENGTH = 64 * 1024

# Identifiers
ID_LENGTH = 8
MAX_ID_LENGTH = 200
MAX_PUBLISH_ATTEMPTS = 5

# Thumbnails
THUMBNAIL_SIZE = 200
THUMBNAIL_TIMEOUT = 10.0

# Listing
RECENT_COUNT = 10
MAX_RECENT_COUNT = 100

# Directory paths
DATA_DIR = "./data"

# Network
HOST = "0.0.0.0"
PORT = 8088
SERVER_URL = "http://localhost:8088"

ENV_PREFIX = "UPLOAD_SERVER_"


def _env(name: str, default):
    return os.getenv(ENV_PREFIX + name, default)


@dataclass(frozen=True)
class Config:
    data_dir: Path = Path(DATA_DIR)
    server_url: str = SERVER_URL
    host: str = HOST
    port: int = PORT
    max_upload_size: int = MAX_UPLOAD_SIZE
    chunk_size: int = CHUNK_SIZE
    thumbnail_size: int = THUMBNAIL_SIZE
    thumbnail_timeout: float = THUMBNAIL_TIMEOUT
    id_length: int = ID_LENGTH
    max_publish_attempts: int = MAX_PUBLISH_ATTEMPTS
    recent_count: int = RECENT_COUNT
    not_found_page: Optional[Path] = None

    def __post_init__(self):
        if self.max_upload_size <= 0:
            raise ValueError("max_upload_size must be positive")
        if self.thumbnail_size <= 0:
            raise ValueError("thumbnail_size must be positive")
        if self.max_publish_attempts <= 0:
            raise ValueError("max_publish_attempts must be positive")

    @classmethod
    def from_env(cls) -> 'Config':
        """Create Config from UPLOAD_SERVER_* environment variables."""
        not_found_page = _env("NOT_FOUND_PAGE", None)
        return cls(
            data_dir=Path(_env("DATA_DIR", DATA_DIR)),
            server_url=_env("SERVER_URL", SERVER_URL),
            host=_env("HOST", HOST),
            port=int(_env("PORT", PORT)),
            max_upload_size=int(_env("MAX_UPLOAD_SIZE", MAX_UPLOAD_SIZE)),
            chunk_size=int(_env("CHUNK_SIZE", CHUNK_SIZE)),
            thumbnail_size=int(_env("THUMBNAIL_SIZE", THUMBNAIL_SIZE)),
            thumbnail_timeout=float(_env("THUMBNAIL_TIMEOUT", THUMBNAIL_TIMEOUT)),
            id_length=int(_env("ID_LENGTH", ID_LENGTH)),
            max_publish_attempts=int(_env("MAX_PUBLISH_ATTEMPTS", MAX_PUBLISH_ATTEMPTS)),
            recent_count=int(_env("RECENT_COUNT", RECENT_COUNT)),
            not_found_page=Path(not_found_page) if not_found_page else None,
        )

    @classmethod
    def from_namespace(cls, args: argparse.Namespace) -> 'Config':
        """Create Config from parsed command line arguments, see build_arg_parser."""
        return cls(
            data_dir=Path(args.data_dir),
            server_url=args.server_url,
            host=args.host,
            port=args.port,
            max_upload_size=args.max_upload_size,
            chunk_size=args.chunk_size,
            thumbnail_size=args.thumbnail_size,
            thumbnail_timeout=args.thumbnail_timeout,
            id_length=args.id_length,
            max_publish_attempts=args.max_publish_attempts,
            recent_count=args.recent_count,
            not_found_page=Path(args.not_found_page) if args.not_found_page else None,
        )


def build_arg_parser(defaults: Config) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Simple file and image upload server')
    parser.add_argument('-d', '--data-dir', default=str(defaults.data_dir),
                        help='Directory where uploaded files are stored and served from')
    parser.add_argument('-s', '--server-url', default=defaults.server_url,
                        help='Public URL base used when generating links')
    parser.add_argument('--host', default=defaults.host, help='Address to bind to')
    parser.add_argument('-P', '--port', type=int, default=defaults.port, help='Port to listen on')
    parser.add_argument('--max-upload-size', type=int, default=defaults.max_upload_size,
                        help='Maximum accepted file size in bytes')
    parser.add_argument('--chunk-size', type=int, default=defaults.chunk_size,
                        help='Read size used when serving files')
    parser.add_argument('--thumbnail-size', type=int, default=defaults.thumbnail_size,
                        help='Longest edge of generated thumbnails in pixels')
    parser.add_argument('--thumbnail-timeout', type=float, default=defaults.thumbnail_timeout,
                        help='Seconds to wait for a thumbnail before giving up')
    parser.add_argument('--id-length', type=int, default=defaults.id_length,
                        help='Number of random characters in generated identifiers')
    parser.add_argument('--max-publish-attempts', type=int, default=defaults.max_publish_attempts,
                        help='Identifier allocations to try before failing an upload')
    parser.add_argument('--recent-count', type=int, default=defaults.recent_count,
                        help='Default number of entries listed by /recent')
    parser.add_argument('--not-found-page',
                        default=str(defaults.not_found_page) if defaults.not_found_page else None,
                        help='HTML file served for unknown routes')
    parser.add_argument('--purge-older-than', type=float, default=None, metavar='DAYS',
                        help='Delete artifacts older than DAYS and exit')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose console logging')
    return parser
