"""Runtime configuration.

Values come from the process environment, optionally seeded from a ``.env``
file through python-dotenv. Every setting has a default that works for a
panel running out of its own directory (``./bin/xray``, ``./data``,
``./logs``).
"""

import logging
import os
from pathlib import Path

import dotenv
import pydantic

logger = logging.getLogger(__name__)

DEFAULT_RELEASES_URL = "https://api.github.com/repos/XTLS/Xray-core/releases"
DEFAULT_DOWNLOAD_URL = "https://github.com/XTLS/Xray-core/releases/download/{tag}/Xray-linux-{arch}.zip"

DEFAULT_ENV = """# Generated on first start
DATABASE_PATH=data/x-ui.db

# Xray core
XRAY_BIN_PATH=./bin/xray
XRAY_CONFIG_PATH=./data/xray.json
XRAY_API_PORT=10085

# Traffic polling interval in seconds
TRAFFIC_POLL_INTERVAL=5

LOG_LEVEL=INFO
"""


class Settings(pydantic.BaseModel):
    database_path: Path = Path("data/x-ui.db")
    xray_bin_path: Path = Path("./bin/xray")
    xray_config_path: Path = Path("./data/xray.json")
    work_dir: Path = Path(".")
    api_port: int = 10085
    poll_interval: float = 5.0  # seconds
    restart_delay: float = 0.05  # seconds between stop and start
    release_index_url: str = DEFAULT_RELEASES_URL
    release_download_url: str = DEFAULT_DOWNLOAD_URL
    log_level: str = "INFO"

    @property
    def log_dir(self) -> Path:
        return self.work_dir / "logs"

    @property
    def access_log_path(self) -> Path:
        return self.log_dir / "access.log"

    @property
    def error_log_path(self) -> Path:
        return self.log_dir / "error.log"

    @property
    def binary_name(self) -> str:
        """Process name used when terminating the core by pattern."""
        return self.xray_bin_path.name

    @classmethod
    def from_env(cls, env_file: str | os.PathLike | None = ".env") -> "Settings":
        """Load settings from the environment.

        Args:
            env_file: Path of a dotenv file to load first. Variables already
                present in the environment win over the file.
        """
        if env_file is not None and Path(env_file).exists():
            dotenv.load_dotenv(env_file)

        values = {
            "database_path": os.getenv("DATABASE_PATH"),
            "xray_bin_path": os.getenv("XRAY_BIN_PATH"),
            "xray_config_path": os.getenv("XRAY_CONFIG_PATH"),
            "work_dir": os.getenv("XUI_WORK_DIR") or os.getcwd(),
            "api_port": os.getenv("XRAY_API_PORT"),
            "poll_interval": os.getenv("TRAFFIC_POLL_INTERVAL"),
            "restart_delay": os.getenv("XRAY_RESTART_DELAY"),
            "release_index_url": os.getenv("XRAY_RELEASES_URL"),
            "release_download_url": os.getenv("XRAY_DOWNLOAD_URL"),
            "log_level": os.getenv("LOG_LEVEL"),
        }
        return cls(**{k: v for k, v in values.items() if v is not None and v != ""})


def ensure_env_file(path: str | os.PathLike = ".env") -> bool:
    """Write a default env file and the working directories on first run.

    Returns:
        True if a new env file was written, False if one already existed.
    """
    for directory in ("data", "logs", "bin"):
        os.makedirs(directory, exist_ok=True)

    env_path = Path(path)
    if env_path.exists():
        return False
    env_path.write_text(DEFAULT_ENV, encoding="utf-8")
    logger.info("First run: wrote default configuration to %s", env_path)
    return True
