"""
Bounded execution of external dump/restore tools.
"""

import logging
import os
import subprocess
from typing import Dict, List, Optional


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3600


class CommandError(Exception):
    """Raised when an external command fails or exceeds its time limit."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def run_command(
    cmd: List[str],
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = DEFAULT_TIMEOUT,
    stdin_path: Optional[str] = None,
    stdout_path: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """
    Run an external command to completion.

    Args:
        cmd: Command and arguments
        env: Extra environment variables merged over os.environ
        timeout: Seconds before the command is killed (None = unbounded)
        stdin_path: Optional file fed to the command's stdin
        stdout_path: Optional file receiving the command's stdout

    Returns:
        CompletedProcess of the finished command

    Raises:
        CommandError: On a non-zero exit, a timeout, or a missing executable
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    logger.debug(f"Running command: {' '.join(cmd)}")

    stdin = open(stdin_path, 'rb') if stdin_path else None
    stdout = open(stdout_path, 'wb') if stdout_path else subprocess.PIPE
    try:
        return subprocess.run(
            cmd,
            env=full_env,
            stdin=stdin,
            stdout=stdout,
            stderr=subprocess.PIPE,
            timeout=timeout,
            check=True,
        )
    except subprocess.TimeoutExpired:
        raise CommandError(f"Command timed out after {timeout} seconds: {cmd[0]}")
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or b'').decode('utf-8', errors='replace').strip()
        raise CommandError(
            f"Command failed with exit code {e.returncode}: {stderr or cmd[0]}",
            returncode=e.returncode,
            stderr=stderr,
        )
    except FileNotFoundError:
        raise CommandError(f"Command not found: {cmd[0]}")
    finally:
        if stdin is not None:
            stdin.close()
        if stdout_path:
            stdout.close()
