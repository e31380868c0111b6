"""
PowerShell Remoting Client - WS-Man / PSRP via pypsrp

Every operation against a lab node goes through here: one script, one
runspace pool, one result. pypsrp is blocking, so calls run in a worker
thread to keep the async services uniform; the workflow still issues them
strictly one at a time.

Usage:
    client = PSRemoteClient(config.remoting, "labadmin", password)
    result = await client.execute("20.1.2.3", "Get-Service WinRM")
    state = await client.run_json("20.1.2.3", "Get-VMSwitch | Select-Object Name")
"""

import asyncio
import json
import logging
import time
from typing import Any, List, Optional, Sequence

import httpx
import requests
from pypsrp.exceptions import AuthenticationError, WinRMError, WinRMTransportError
from pypsrp.powershell import PowerShell, RunspacePool
from pypsrp.wsman import WSMan
from requests_credssp.exceptions import AuthenticationException, NTStatusException
from spnego.exceptions import SpnegoError

from nestedlab.config import LabConfig, RemotingSettings
from nestedlab.errors import (
    RemoteAuthenticationError,
    RemoteExecutionError,
    RemoteTransportError,
    RetryExhaustedError,
)
from nestedlab.schemas.models import RemoteResult
from nestedlab.services.helpers.powershell_utils import PowerShellValidator, preview, ps_script
from nestedlab.services.helpers.retry import retry_async


logger = logging.getLogger("nestedlab.remote")

SCRIPT_PREAMBLE = ps_script(
    "$ErrorActionPreference = 'Stop'",
    "$ProgressPreference = 'SilentlyContinue'",
)

JSON_WRAPPER = """$__nestedlab = & {{
{script}
}}
if ($null -ne $__nestedlab) {{ ConvertTo-Json -InputObject $__nestedlab -Depth 6 -Compress }}"""


def redact(text: str, secrets: Sequence[str] = ()) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text


def _stringify(item: Any) -> str:
    """Best-effort text for PSRP output objects and error records."""
    if item is None:
        return ""
    if isinstance(item, str):
        return item

    exception = getattr(item, "exception", None)
    message = getattr(exception, "message", None)
    if isinstance(message, str) and message.strip():
        return message.strip()

    for attr in ("to_string", "message"):
        value = getattr(item, attr, None)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return str(item)


class PSRemoteClient:
    """
    PowerShell remoting to lab nodes.

    Sessions are per call (nodes reboot during a deploy, so nothing is cached).
    """

    def __init__(self, settings: RemotingSettings, username: str, password: str):
        self.settings = settings
        self.username = username
        self._password = password

    # ------------------------------------------------------------------
    # Blocking internals (run in a worker thread)
    # ------------------------------------------------------------------

    def _create_session(self, host: str) -> WSMan:
        return WSMan(
            host,
            port=self.settings.port,
            username=self.username,
            password=self._password,
            auth=self.settings.auth,
            ssl=self.settings.use_ssl,
            cert_validation=self.settings.cert_validation,
            connection_timeout=self.settings.connection_timeout,
            operation_timeout=self.settings.operation_timeout,
            read_timeout=self.settings.read_timeout,
        )

    def _invoke_blocking(self, host: str, script: str) -> RemoteResult:
        full_script = ps_script(SCRIPT_PREAMBLE, script)
        start = time.monotonic()
        try:
            with self._create_session(host) as wsman, RunspacePool(wsman) as pool:
                ps = PowerShell(pool)
                ps.add_script(full_script)
                output = ps.invoke()
                errors = [_stringify(e) for e in ps.streams.error]
                had_errors = bool(ps.had_errors)
        except (AuthenticationError, AuthenticationException, NTStatusException, SpnegoError) as e:
            logger.error("Authentication failed for %s@%s: %s", self.username, host, e)
            raise RemoteAuthenticationError(str(e), host) from e
        except (WinRMTransportError, WinRMError, requests.exceptions.RequestException) as e:
            logger.error("WinRM transport failure to %s: %s", host, e)
            raise RemoteTransportError(str(e), host) from e

        lines: List[str] = []
        for item in output or []:
            text = _stringify(item)
            if text:
                lines.extend(text.splitlines())

        return RemoteResult(
            host=host,
            success=not had_errors,
            output=lines,
            errors=[e for e in errors if e],
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(self, host: str, script: str, secrets: Sequence[str] = ()) -> RemoteResult:
        """
        Run a script on `host`.

        Returns:
            RemoteResult; success is False when the script wrote errors
            (values in `secrets` are masked in log lines)

        Raises:
            ValueError: the generated script is structurally broken
            RemoteAuthenticationError / RemoteTransportError: connection failures
        """
        problems = PowerShellValidator.validate_syntax(script)
        if problems:
            raise ValueError(f"Refusing to send malformed PowerShell: {problems[0]}")

        logger.info("PS %s: %s", host, preview(redact(script, secrets)))
        logger.debug("Full script for %s:\n%s", host, redact(script, secrets))
        result = await asyncio.to_thread(self._invoke_blocking, host, script)
        if not result.success:
            logger.warning("Script on %s reported errors: %s", host, redact("; ".join(result.errors[:3]), secrets))
        return result

    async def run(self, host: str, script: str, secrets: Sequence[str] = ()) -> RemoteResult:
        """Like execute(), but raises RemoteExecutionError when the script fails."""
        result = await self.execute(host, script, secrets)
        if not result.success:
            first = result.errors[0] if result.errors else "unknown error"
            raise RemoteExecutionError(
                f"{host}: {redact(first, secrets)}",
                host=host,
                script_preview=preview(redact(script, secrets)),
                errors=[redact(e, secrets) for e in result.errors],
            )
        return result

    async def run_json(self, host: str, script: str, secrets: Sequence[str] = ()) -> Any:
        """
        Run a script and parse its pipeline output as JSON.

        Returns None when the script produced no output.
        """
        result = await self.run(host, JSON_WRAPPER.format(script=script), secrets)
        text = result.text
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise RemoteExecutionError(
                f"{host}: script output is not JSON ({e})",
                host=host,
                script_preview=preview(redact(script, secrets)),
            ) from e

    @property
    def wsman_url_scheme(self) -> str:
        return "https" if self.settings.use_ssl else "http"

    async def probe(self, host: str) -> int:
        """
        Hit the WS-Man endpoint once.

        Any HTTP status (usually 401 or 405) proves the listener is up.
        """
        url = f"{self.wsman_url_scheme}://{host}:{self.settings.port}/wsman"
        async with httpx.AsyncClient(verify=False, timeout=self.settings.connection_timeout) as client:
            response = await client.get(url)
        return response.status_code

    async def wait_until_reachable(
        self,
        host: str,
        attempts: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> bool:
        """Poll the WS-Man listener with the bounded retry. Returns False when it never answers."""
        try:
            status = await retry_async(
                lambda: self.probe(host),
                attempts=attempts or self.settings.reachability_attempts,
                delay=self.settings.reachability_delay if delay is None else delay,
                retry_on=(httpx.HTTPError, OSError),
                description=f"WinRM probe {host}:{self.settings.port}",
            )
        except RetryExhaustedError:
            return False
        logger.info("WinRM listener on %s answered (HTTP %s)", host, status)
        return True


# Singleton client
_remote_client: Optional[PSRemoteClient] = None


def get_remote_client(config: Optional[LabConfig] = None) -> PSRemoteClient:
    """Get or create the singleton PSRemoteClient (needs config on first call)."""
    global _remote_client
    if _remote_client is None:
        if config is None:
            raise RuntimeError("Remote client not initialised; pass the lab config on first use")
        _remote_client = PSRemoteClient(
            config.remoting,
            config.azure.admin_username,
            config.admin_password.get_secret_value(),
        )
    return _remote_client


def reset_remote_client() -> None:
    global _remote_client
    _remote_client = None
