# runtime_agent/nginx.py
"""nginx control: validate-then-swap configuration, hot reload."""

import logging
import os
import subprocess
import threading
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


class NginxRejected(Exception):
    """nginx -t refused a configuration."""
    pass


class NginxUnavailable(Exception):
    """nginx binary missing or not answering."""
    pass


class NginxManager:
    """
    Owns the nginx configuration file.

    A new configuration is written next to the live one, checked with
    `nginx -t -c <candidate>` and only then moved over the live file with an
    atomic rename. A rejected candidate never touches the live file.
    """

    def __init__(self, config_path: str, binary: str = "nginx", timeout: int = 30):
        self.config_path = Path(config_path)
        self.binary = binary
        self.timeout = timeout
        self._lock = threading.Lock()

    def install(self, config_text: str) -> None:
        candidate = self.config_path.with_name(self.config_path.name + ".candidate")

        with self._lock:
            candidate.write_text(config_text, encoding="utf-8")
            try:
                self._run([self.binary, "-t", "-c", str(candidate)])
            except NginxRejected:
                candidate.unlink(missing_ok=True)
                raise

            if self.config_path.exists():
                previous = self.config_path.with_name(self.config_path.name + ".previous")
                previous.write_bytes(self.config_path.read_bytes())

            os.replace(candidate, self.config_path)

        logger.info(f"✅ Installed nginx configuration {self.config_path}")

    def reload(self) -> None:
        """Signal nginx to re-read its configuration (no stop/start)."""
        with self._lock:
            self._run([self.binary, "-t", "-c", str(self.config_path)])
            self._run([self.binary, "-s", "reload", "-c", str(self.config_path)])

        logger.info("🔄 nginx reloaded")

    def _run(self, command: List[str]) -> str:
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise NginxUnavailable(f"{self.binary} not found") from e
        except subprocess.TimeoutExpired as e:
            raise NginxUnavailable(f"{' '.join(command)} timed out") from e

        if result.returncode != 0:
            output = (result.stderr or result.stdout).strip()
            logger.error(f"❌ {' '.join(command)} failed: {output}")
            raise NginxRejected(output)

        return result.stderr or result.stdout
