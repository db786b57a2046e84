"""Middleware RPC gateway.

The reconciler and engines only need two verbs: an immediate ``call`` and a
``call_and_wait`` for methods that run as middleware jobs. ``MidcltGateway``
provides both by shelling out to ``midclt``, locally or over ssh.
"""
import json
import shlex
import subprocess
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from tillstand.core.config import get_config
from tillstand.core.errors import MalformedResponseError, RPCError
from tillstand.core.logger import get_logger

logger = get_logger(__name__)

# Methods whose mock answer is an empty record list
_LIST_SUFFIXES = (".query", ".device_list")


class RPCGateway(ABC):
    """Abstract interface to the remote management API."""

    def __init__(self, mock: bool = False):
        """Initialize gateway.

        Args:
            mock: If True, log calls instead of executing them
        """
        self.mock = mock

    @abstractmethod
    def call(self, method: str, params: Any = None) -> Any:
        """Invoke ``method`` and return its decoded result.

        Raises:
            RPCError: The middleware rejected the call
            MalformedResponseError: The result could not be decoded
        """
        pass

    @abstractmethod
    def call_and_wait(self, method: str, params: Any = None) -> Any:
        """Invoke a job-backed ``method`` and block until the job finishes."""
        pass


class MidcltGateway(RPCGateway):
    """Gateway backed by the ``midclt`` command line client."""

    def __init__(
        self,
        midclt: Optional[str] = None,
        ssh_host: Optional[str] = None,
        timeout: Optional[int] = None,
        mock: bool = False,
    ):
        super().__init__(mock)
        config = get_config()
        self.midclt = midclt or config.midclt_command
        self.ssh_host = ssh_host if ssh_host is not None else config.ssh_host
        self.timeout = timeout or config.command_timeout

    def call(self, method: str, params: Any = None) -> Any:
        return self._run(method, params, job=False)

    def call_and_wait(self, method: str, params: Any = None) -> Any:
        return self._run(method, params, job=True)

    def build_command(self, method: str, params: Any = None, job: bool = False) -> List[str]:
        """Build the argv for one midclt invocation."""
        cmd = [self.midclt, 'call']
        if job:
            cmd.append('-job')
        cmd.append(method)
        if params is not None:
            cmd.append(json.dumps(params))

        if self.ssh_host:
            return ['ssh', self.ssh_host, shlex.join(cmd)]
        return cmd

    def _run(self, method: str, params: Any, job: bool) -> Any:
        cmd = self.build_command(method, params, job=job)

        if self.mock:
            logger.info(f"MOCK: Would call {method}{' (job)' if job else ''}")
            if method.endswith(_LIST_SUFFIXES):
                return []
            return None

        logger.debug(f"Command: {shlex.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as e:
            raise RPCError.from_output(method, e.stderr or e.stdout or str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise RPCError(
                method,
                f"Operation timed out after {self.timeout}s",
                code="ETIMEDOUT",
                suggestion="Increase TILLSTAND_COMMAND_TIMEOUT or check the server for stuck jobs.",
            ) from e
        except OSError as e:
            raise RPCError(method, f"Cannot run {cmd[0]}: {e}", code="ECONNREFUSED") from e

        return self.decode(method, result.stdout)

    @staticmethod
    def decode(method: str, output: str) -> Any:
        """Decode midclt stdout; empty output is ``None``."""
        text = (output or "").strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass
        # Job runs may print progress lines before the JSON result
        last_line = text.splitlines()[-1].strip()
        try:
            return json.loads(last_line)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(method, str(e)) from e
