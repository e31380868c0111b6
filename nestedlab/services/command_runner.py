"""
Local Command Runner - terraform, ssh and friends

Runs local binaries with asyncio subprocesses, argv only (no shell), and
always returns a CommandResult. Process failures are data, not exceptions;
callers decide whether a non-zero exit is fatal.
"""

import asyncio
import logging
import os
import time
from typing import Dict, List, Optional

from nestedlab.schemas.models import CommandResult


logger = logging.getLogger("nestedlab.command")


class LocalExecutor:
    """
    Local process executor.

    Output is decoded as UTF-8 with replacement so a stray byte from a
    Windows console never aborts a deploy.
    """

    def __init__(self, default_cwd: Optional[str] = None):
        self.default_cwd = default_cwd or os.getcwd()

    async def execute(
        self,
        argv: List[str],
        timeout: float = 600,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        stdin_data: Optional[str] = None,
    ) -> CommandResult:
        """
        Execute a command.

        Args:
            argv: Program and arguments
            timeout: Timeout in seconds
            cwd: Working directory (defaults to the executor's default)
            env: Extra environment variables merged onto os.environ
            stdin_data: Text fed to the process on stdin

        Returns:
            CommandResult with stdout, stderr, exit_code
        """
        if not argv:
            return CommandResult(success=False, stdout="", stderr="Empty command", exit_code=-1)

        work_dir = cwd or self.default_cwd
        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        logger.debug("Running %s (cwd=%s)", " ".join(argv), work_dir)
        start = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=work_dir,
                env=full_env,
            )
        except FileNotFoundError:
            return CommandResult(
                success=False,
                stdout="",
                stderr=f"Command not found: {argv[0]}",
                exit_code=127,
            )

        payload = stdin_data.encode("utf-8") if stdin_data is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return CommandResult(
                success=False,
                stdout="",
                stderr=f"Command timed out after {timeout}s: {argv[0]}",
                exit_code=-1,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        exit_code = process.returncode if process.returncode is not None else -1
        return CommandResult(
            success=exit_code == 0,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
            exit_code=exit_code,
            duration_ms=int((time.monotonic() - start) * 1000),
        )


# Singleton executor
_local_executor: Optional[LocalExecutor] = None


def get_local_executor() -> LocalExecutor:
    """Get or create singleton LocalExecutor."""
    global _local_executor
    if _local_executor is None:
        _local_executor = LocalExecutor()
    return _local_executor
