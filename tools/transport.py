"""Transports that reach deployment targets.

A transport does two things: copy a file to a transient path on the host,
and run one shell script there. ``ssh`` uses scp/ssh with batch-mode
authentication; ``local`` runs against the local filesystem, for hosts that
are the orchestrator machine itself.
"""

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from schemas.definitions import RemoteTarget

logger = logging.getLogger(__name__)


@dataclass
class TransportResult:
    """Result of a transport operation."""

    success: bool
    exit_code: int | None = None
    output: str = ""


class RemoteTransport(ABC):
    """Abstract transport to one target host."""

    name: str = "base"

    def __init__(self, target: RemoteTarget) -> None:
        self.target = target

    @abstractmethod
    def copy(self, local_path: Path, remote_path: str) -> TransportResult:
        """Copy a local file to a path on the target."""
        ...

    @abstractmethod
    def execute(self, script: str) -> TransportResult:
        """Run a shell script on the target as a single command sequence."""
        ...

    def _run(self, args: list[str], input_text: str | None = None) -> TransportResult:
        try:
            result = subprocess.run(
                args,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=self.target.timeout,
            )
        except subprocess.TimeoutExpired:
            return TransportResult(
                success=False,
                output=f"{args[0]} timed out after {self.target.timeout}s",
            )
        except FileNotFoundError:
            return TransportResult(success=False, exit_code=127, output=f"Command not found: {args[0]}")

        return TransportResult(
            success=result.returncode == 0,
            exit_code=result.returncode,
            output=f"{result.stdout}{result.stderr}",
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(host={self.target.host!r})"


class SshTransport(RemoteTransport):
    """scp + ssh with non-interactive key authentication."""

    name = "ssh"

    def _auth_args(self) -> list[str]:
        args = ["-o", "BatchMode=yes"]
        if self.target.ssh_key_path:
            args.extend(["-i", self.target.ssh_key_path])
        return args

    def copy(self, local_path: Path, remote_path: str) -> TransportResult:
        args = ["scp", "-q", *self._auth_args(), str(local_path), f"{self.target.address}:{remote_path}"]
        logger.info("TRANSPORT: scp %s -> %s:%s", local_path.name, self.target.host, remote_path)
        return self._run(args)

    def execute(self, script: str) -> TransportResult:
        args = ["ssh", *self._auth_args(), self.target.address, "sh", "-s"]
        logger.info("TRANSPORT: ssh %s (remote sequence)", self.target.address)
        return self._run(args, input_text=script)


class LocalTransport(RemoteTransport):
    """Deploys onto the machine running the orchestrator."""

    name = "local"

    def copy(self, local_path: Path, remote_path: str) -> TransportResult:
        destination = Path(remote_path)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, destination)
        except OSError as e:
            return TransportResult(success=False, output=str(e))
        return TransportResult(success=True, exit_code=0)

    def execute(self, script: str) -> TransportResult:
        return self._run(["sh", "-s"], input_text=script)


def get_transport(target: RemoteTarget) -> RemoteTransport:
    """Create the transport configured for a target."""
    transports: dict[str, type[RemoteTransport]] = {
        "ssh": SshTransport,
        "local": LocalTransport,
    }
    return transports[target.transport](target)
