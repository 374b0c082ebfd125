"""Release deployment to remote targets.

Each deploy follows the same sequence on the target host:

1. Transfer the artifact to a transient path
2. Unpack into a fresh release directory named for the run
3. Run the target's activation commands (migrations, cache priming)
4. Atomically repoint the current symlink at the new release
5. Remove the transferred artifact

Steps 2-5 run as one remote shell sequence with ``set -e``; any failure
stops it before the symlink swap, so the previous release keeps serving.
Earlier release directories are never touched and remain available for
rollback.
"""

import logging
import posixpath
import re
import shlex
from datetime import datetime
from typing import Callable

from schemas.artifact import Artifact
from schemas.definitions import RemoteTarget, TargetRole
from schemas.deployment import DeploymentRecord, DeployResult

from .errors import ActivationFailed, InvalidTarget, TransferFailed
from .release_ledger import ReleaseLedger
from .transport import RemoteTransport, get_transport

logger = logging.getLogger(__name__)

PHASE_MARKER = "::phase "
PHASE_PATTERN = re.compile(r"^::phase (\w+)\s*$", re.MULTILINE)

# Phases reached only after the symlink points at the new release
SWITCHED_PHASES = {"cleanup", "done"}


def build_deploy_script(
    artifact_path: str,
    release_dir: str,
    current_path: str,
    unpack_command: str,
    activation: tuple[str, ...] | list[str],
    variables: dict[str, str] | None = None,
) -> str:
    """Build the remote command sequence for one release.

    Args:
        artifact_path: Transient artifact location on the host
        release_dir: Fresh directory for this release
        current_path: Symlink serving the live release
        unpack_command: Command that unpacks $ARTIFACT_PATH into $RELEASE_DIR
        activation: Commands run inside the release directory
        variables: Extra variables exported to the sequence

    Returns:
        POSIX shell script
    """
    exports = {
        "ARTIFACT_PATH": artifact_path,
        "RELEASE_DIR": release_dir,
        "CURRENT_LINK": current_path,
        **(variables or {}),
    }
    lines = ["set -e"]
    lines += [f"{key}={shlex.quote(value)}; export {key}" for key, value in exports.items()]
    lines += [
        "trap 'rm -f \"$ARTIFACT_PATH\"' EXIT",
        f"echo '{PHASE_MARKER}unpack'",
        'if [ -e "$RELEASE_DIR" ]; then echo "release directory already exists: $RELEASE_DIR" >&2; exit 3; fi',
        'mkdir -p "$RELEASE_DIR"',
        unpack_command,
        f"echo '{PHASE_MARKER}activate'",
        'cd "$RELEASE_DIR"',
        *activation,
        f"echo '{PHASE_MARKER}switch'",
        'mkdir -p "$(dirname "$CURRENT_LINK")"',
        'ln -sfn "$RELEASE_DIR" "$CURRENT_LINK.next"',
        'mv -Tf "$CURRENT_LINK.next" "$CURRENT_LINK"',
        f"echo '{PHASE_MARKER}cleanup'",
        'rm -f "$ARTIFACT_PATH"',
        f"echo '{PHASE_MARKER}done'",
    ]
    return "\n".join(lines) + "\n"


def build_rollback_script(release_dir: str, current_path: str) -> str:
    """Build the remote sequence that repoints the symlink at an existing release."""
    return "\n".join(
        [
            "set -e",
            f"RELEASE_DIR={shlex.quote(release_dir)}",
            f"CURRENT_LINK={shlex.quote(current_path)}",
            'if [ ! -d "$RELEASE_DIR" ]; then echo "no such release: $RELEASE_DIR" >&2; exit 4; fi',
            f"echo '{PHASE_MARKER}switch'",
            'ln -sfn "$RELEASE_DIR" "$CURRENT_LINK.next"',
            'mv -Tf "$CURRENT_LINK.next" "$CURRENT_LINK"',
            f"echo '{PHASE_MARKER}done'",
        ]
    ) + "\n"


def last_phase(output: str) -> str | None:
    """Last phase marker printed by a remote sequence."""
    phases = PHASE_PATTERN.findall(output)
    return phases[-1] if phases else None


class DeploymentExecutor:
    """Deploys immutable artifacts to staging and standby production hosts."""

    def __init__(
        self,
        ledger: ReleaseLedger | None = None,
        transport_factory: Callable[[RemoteTarget], RemoteTransport] = get_transport,
    ) -> None:
        """Initialize deployment executor.

        Args:
            ledger: Deployment history; attempts are recorded when given
            transport_factory: Builds the transport for a target
        """
        self.ledger = ledger
        self.transport_factory = transport_factory

    def deploy(self, artifact: Artifact, target: RemoteTarget, run_id: str | None = None) -> DeployResult:
        """Deploy an artifact to a target.

        Args:
            artifact: Artifact fetched from the store
            target: Staging or production-standby target
            run_id: Owning run (default: the artifact's run)

        Returns:
            DeployResult for a release whose symlink now points at it

        Raises:
            InvalidTarget: The target currently serves live production traffic
            TransferFailed: The artifact could not be copied
            ActivationFailed: Unpack or activation failed; symlink untouched
        """
        if target.role == TargetRole.PRODUCTION_ACTIVE:
            raise InvalidTarget(
                f"Refusing to deploy to {target.name} ({target.host}): it is the active production host"
            )

        run_id = run_id or artifact.run_id
        release_dir = target.release_dir(artifact.run_number)
        transfer_path = posixpath.join(target.transfer_dir, f"{run_id}-{artifact.filename}")
        transport = self.transport_factory(target)
        started = datetime.now()

        result = DeployResult(
            success=False,
            target=target.name,
            role=target.role,
            host=target.host,
            artifact_id=artifact.artifact_id,
            release_dir=release_dir,
            current_path=target.current_path,
        )

        logger.info("DEPLOY: %s -> %s (%s) release %s", artifact.artifact_id, target.name, target.host, release_dir)
        copied = transport.copy(artifact.path, transfer_path)
        if not copied.success:
            result.logs = copied.output
            result.duration_seconds = (datetime.now() - started).total_seconds()
            self._record(result, run_id)
            raise TransferFailed(
                f"Transfer of {artifact.filename} to {target.host} failed: {copied.output.strip()[:200]}",
                output=copied.output,
            )

        script = build_deploy_script(
            artifact_path=transfer_path,
            release_dir=release_dir,
            current_path=target.current_path,
            unpack_command=target.unpack_command,
            activation=target.activation,
            variables={"RUN_ID": run_id, "ARTIFACT_ID": artifact.artifact_id},
        )
        executed = transport.execute(script)

        result.logs = executed.output
        result.phase = last_phase(executed.output) or "unpack"
        result.symlink_updated = result.phase in SWITCHED_PHASES
        result.success = result.symlink_updated
        result.duration_seconds = (datetime.now() - started).total_seconds()
        self._record(result, run_id)

        if not result.success:
            logger.error("DEPLOY: %s failed during %s on %s", artifact.artifact_id, result.phase, target.host)
            raise ActivationFailed(
                f"Deployment to {target.name} failed during {result.phase} "
                f"(exit {executed.exit_code}); current symlink left unchanged",
                result=result,
            )

        if not executed.success:
            logger.warning("DEPLOY: Release switched on %s but cleanup failed: %s", target.host, executed.output.strip()[-200:])
        logger.info("DEPLOY: %s now serves %s", target.current_path, release_dir)
        return result

    def rollback(self, target: RemoteTarget, release: str, run_id: str = "rollback") -> DeployResult:
        """Repoint a target's current symlink at an earlier release.

        Args:
            target: Target to roll back
            release: Release directory, absolute or a sibling name like 'release-41'
            run_id: Label recorded in the ledger

        Raises:
            ActivationFailed: The release does not exist or the swap failed
        """
        releases_root = posixpath.dirname(target.release_path)
        release_dir = release if posixpath.isabs(release) else posixpath.join(releases_root, release)
        transport = self.transport_factory(target)
        started = datetime.now()

        executed = transport.execute(build_rollback_script(release_dir, target.current_path))
        phase = last_phase(executed.output) or "switch"
        result = DeployResult(
            success=executed.success and phase == "done",
            target=target.name,
            role=target.role,
            host=target.host,
            artifact_id=posixpath.basename(release_dir),
            release_dir=release_dir,
            current_path=target.current_path,
            phase=phase,
            symlink_updated=executed.success and phase == "done",
            duration_seconds=(datetime.now() - started).total_seconds(),
            logs=executed.output,
        )
        self._record(result, run_id, action="rollback")

        if not result.success:
            raise ActivationFailed(f"Rollback of {target.name} to {release_dir} failed", result=result)
        logger.info("DEPLOY: Rolled %s back to %s", target.name, release_dir)
        return result

    def _record(self, result: DeployResult, run_id: str, action: str = "deploy") -> None:
        if self.ledger is None:
            return
        self.ledger.record(
            DeploymentRecord(
                run_id=run_id,
                artifact_id=result.artifact_id,
                target=result.target,
                role=result.role,
                host=result.host,
                release_dir=result.release_dir,
                success=result.success,
                action=action,
            )
        )
