"""
Environment detection and .env file loading.

One .env file serves desktop and Docker runs alike; runtime detection
decides where the file and the log directory live.
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


class Environment:
    """Detect and configure environment."""

    def __init__(self):
        self.is_docker = self._detect_docker()
        self.env_name = os.getenv('FUEL_LEDGER_ENV') or ("prod" if self.is_docker else "dev")
        self.env_file = self._find_env_file()
        self._loaded = False

    def _detect_docker(self) -> bool:
        """Detect if running in Docker container."""
        if os.path.exists('/.dockerenv'):
            return True
        if os.getenv('IN_DOCKER', '').lower() == 'true':
            return True
        try:
            with open('/proc/1/cgroup', 'r') as f:
                return 'docker' in f.read()
        except OSError:
            return False

    def _find_env_file(self) -> Optional[Path]:
        """Find the .env file for the current environment."""
        if self.is_docker:
            env_path = Path('/app/.env')
        else:
            # Go up from Config/ to project root
            project_root = Path(__file__).parents[1]
            env_path = project_root / '.env'

        return env_path if env_path.exists() else None

    def load(self, force_reload: bool = False) -> None:
        """
        Load environment variables from file.

        Variables already present in the process environment win over the file.

        Args:
            force_reload: If True, reload even if already loaded
        """
        if self._loaded and not force_reload:
            return

        if self.env_file:
            load_dotenv(self.env_file, override=False)
        self._loaded = True

    # ========================================================================
    # Environment-Specific Helpers
    # ========================================================================

    @property
    def log_dir(self) -> Path:
        """Get log directory for current environment."""
        env_path = os.getenv('FUEL_LEDGER_LOG_DIR')
        if env_path:
            return Path(env_path)
        if self.is_docker:
            return Path('/app/logs')
        return Path(__file__).parents[1] / 'logs'

    def __repr__(self) -> str:
        return f"Environment(env={self.env_name}, docker={self.is_docker}, file={self.env_file})"


def get_environment() -> str:
    """Name of the running environment ('dev', 'prod', 'staging', ...)."""
    return env.env_name


# ============================================================================
# Global Instance - Auto-load on import
# ============================================================================

env = Environment()
env.load()

is_docker = env.is_docker
env_name = env.env_name
