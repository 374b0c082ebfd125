"""Configuration management for shipline.

Loads configuration from:
1. shipline.toml (defaults)
2. Environment variables (overrides)
"""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from dotenv import load_dotenv
from pydantic import ValidationError

from schemas.definitions import (
    CleanupPolicy,
    RemoteTarget,
    RunConfig,
    SidecarSpec,
    StageDefinition,
    Step,
    TargetRole,
)
from tools.artifact_store import DEFAULT_EXCLUSIONS
from tools.errors import ConfigError

# Load .env file if present
load_dotenv()

CONFIG_FILENAME = "shipline.toml"


@dataclass
class ProjectConfig:
    """What is being shipped."""

    name: str = "app"
    workspace: str = "."


@dataclass
class PipelineSettings:
    """Run bookkeeping and sidecar polling defaults."""

    runs_dir: str = ".shipline/runs"
    log_level: str = "INFO"
    sidecar_poll_interval: float = 2.0
    sidecar_max_attempts: int = 30


@dataclass
class DatabaseConfig:
    """Connection parameters for the test database sidecar.

    Exported to every step as DB_HOST, DB_PORT, DB_NAME, DB_USER and
    DB_PASSWORD.
    """

    host: str = "127.0.0.1"
    port: int = 3306
    name: str = "app_test"
    user: str = "root"
    password: str = ""

    def as_env(self) -> dict[str, str]:
        return {
            "DB_HOST": self.host,
            "DB_PORT": str(self.port),
            "DB_NAME": self.name,
            "DB_USER": self.user,
            "DB_PASSWORD": self.password,
        }


@dataclass
class StageConfig:
    """Steps and resources of a single stage."""

    steps: list[dict[str, Any]] = field(default_factory=list)
    parallel: bool = False
    sidecar: dict[str, Any] | None = None
    cleanup_steps: list[dict[str, Any]] = field(default_factory=list)
    cleanup_policy: str = "always"


@dataclass
class ArtifactConfig:
    """Artifact store location and packaging exclusions."""

    store_dir: str = ".shipline/artifacts"
    exclusions: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUSIONS))


@dataclass
class ApprovalConfig:
    """Production promotion gate."""

    prompt: str = "Promote release to production?"
    approvers: list[str] = field(default_factory=list)  # Empty = anyone
    timeout_hours: float = 24.0
    poll_interval: float = 5.0


@dataclass
class Config:
    """Main configuration container."""

    project: ProjectConfig = field(default_factory=ProjectConfig)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    build_test: StageConfig = field(default_factory=StageConfig)
    quality_gates: StageConfig = field(default_factory=lambda: StageConfig(parallel=True))
    artifact: ArtifactConfig = field(default_factory=ArtifactConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    targets: dict[str, dict[str, Any]] = field(default_factory=dict)

    # Relative paths resolve against this directory
    base_dir: Path = field(default_factory=Path.cwd)

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> "Config":
        """Create Config from dictionary."""
        try:
            return cls(
                project=ProjectConfig(**data.get("project", {})),
                pipeline=PipelineSettings(**data.get("pipeline", {})),
                database=DatabaseConfig(**data.get("database", {})),
                build_test=StageConfig(**data.get("build_test", {})),
                quality_gates=StageConfig(**{"parallel": True, **data.get("quality_gates", {})}),
                artifact=ArtifactConfig(**data.get("artifact", {})),
                approval=ApprovalConfig(**data.get("approval", {})),
                targets=data.get("targets", {}),
                base_dir=base_dir or Path.cwd(),
            )
        except TypeError as e:
            raise ConfigError(f"Unknown configuration key: {e}") from e

    def resolve(self, path: str) -> Path:
        p = Path(path).expanduser()
        return p if p.is_absolute() else (self.base_dir / p).resolve()

    @property
    def runs_dir(self) -> Path:
        return self.resolve(self.pipeline.runs_dir)

    @property
    def workspace(self) -> Path:
        return self.resolve(self.project.workspace)

    def build_targets(self) -> tuple[RemoteTarget, ...]:
        """Validate [targets.*] into RemoteTarget models.

        Raises:
            ConfigError: A target is invalid or the production pair is incomplete
        """
        targets = []
        for name, raw in self.targets.items():
            try:
                targets.append(RemoteTarget(name=name, **raw))
            except ValidationError as e:
                raise ConfigError(f"targets.{name}: {_first_error(e)}") from e

        roles = [t.role for t in targets]
        for role in TargetRole:
            if roles.count(role) > 1:
                raise ConfigError(f"targets: more than one {role.value} target")
        has_active = TargetRole.PRODUCTION_ACTIVE in roles
        has_standby = TargetRole.PRODUCTION_STANDBY in roles
        if has_active != has_standby:
            raise ConfigError("targets: production needs exactly one production-active and one production-standby target")

        # The standby must never resolve to the live host's release symlink
        by_role = {t.role: t for t in targets}
        active = by_role.get(TargetRole.PRODUCTION_ACTIVE)
        standby = by_role.get(TargetRole.PRODUCTION_STANDBY)
        if active and standby and (active.host, active.current_path) == (standby.host, standby.current_path):
            raise ConfigError(
                f"targets.{standby.name}: shares host and current_path with production-active target {active.name}"
            )
        return tuple(targets)

    def build_stage(self, name: str) -> StageDefinition:
        """Validate a stage section into a StageDefinition."""
        stage: StageConfig = getattr(self, name)
        try:
            sidecar = None
            if stage.sidecar is not None:
                sidecar = SidecarSpec(
                    **{
                        "poll_interval": self.pipeline.sidecar_poll_interval,
                        "max_attempts": self.pipeline.sidecar_max_attempts,
                        **stage.sidecar,
                    }
                )
            return StageDefinition(
                name=name,
                steps=tuple(Step(**s) for s in stage.steps),
                parallel=stage.parallel,
                sidecar=sidecar,
                cleanup_steps=tuple(Step(**s) for s in stage.cleanup_steps),
                cleanup_policy=CleanupPolicy(stage.cleanup_policy),
            )
        except ValidationError as e:
            raise ConfigError(f"{name}: {_first_error(e)}") from e
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{name}: {e}") from e

    def for_run(self, run_number: int) -> RunConfig:
        """Build the immutable configuration for one run.

        Args:
            run_number: Monotonically increasing number of the triggering event

        Raises:
            ConfigError: The configuration is invalid
        """
        if run_number < 0:
            raise ConfigError("run_number must be non-negative")
        try:
            return RunConfig(
                project=self.project.name,
                run_number=run_number,
                workspace=self.workspace,
                runs_dir=self.runs_dir,
                artifact_dir=self.resolve(self.artifact.store_dir),
                exclusions=tuple(self.artifact.exclusions),
                build_test=self.build_stage("build_test"),
                quality_gates=self.build_stage("quality_gates"),
                targets=self.build_targets(),
                approval_prompt=self.approval.prompt,
                approvers=frozenset(self.approval.approvers),
                approval_timeout_seconds=self.approval.timeout_hours * 3600,
                approval_poll_interval=self.approval.poll_interval,
                environment=self.database.as_env(),
            )
        except ValidationError as e:
            raise ConfigError(_first_error(e)) from e


def _first_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {first['msg']}" if location else first["msg"]


def find_config_file() -> Path | None:
    """Find shipline.toml in current or parent directories.

    Returns:
        Path to shipline.toml or None if not found.
    """
    current = Path.cwd()

    for directory in [current, *current.parents]:
        config_path = directory / CONFIG_FILENAME
        if config_path.exists():
            return config_path

    return None


def load_config(config_path: Path | str | None = None) -> Config:
    """Load configuration from file and environment.

    Args:
        config_path: Optional explicit path to shipline.toml

    Returns:
        Config object with merged settings.

    Raises:
        ConfigError: The file is missing or not valid TOML
    """
    # Start with defaults
    config_data: dict[str, Any] = {}
    base_dir: Path | None = None

    # Load from file if available
    if config_path is None:
        config_path = find_config_file()
    elif not Path(config_path).exists():
        raise ConfigError(f"Config file not found: {config_path}")

    if config_path is not None:
        path = Path(config_path)
        base_dir = path.resolve().parent
        try:
            with open(path, "rb") as f:
                config_data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"{path}: {e}") from e

    # Apply environment variable overrides
    approvers = os.getenv("SHIPLINE_APPROVERS")
    env_overrides = {
        "pipeline": {
            "runs_dir": os.getenv("SHIPLINE_RUNS_DIR"),
            "log_level": os.getenv("LOG_LEVEL"),
        },
        "database": {
            "host": os.getenv("DB_HOST"),
            "port": _int_or_none(os.getenv("DB_PORT")),
            "name": os.getenv("DB_NAME"),
            "user": os.getenv("DB_USER"),
            "password": os.getenv("DB_PASSWORD"),
        },
        "approval": {
            "approvers": [a.strip() for a in approvers.split(",") if a.strip()] if approvers is not None else None,
        },
    }

    # Merge env overrides (only non-None values)
    for section, values in env_overrides.items():
        if section not in config_data:
            config_data[section] = {}
        for key, value in values.items():
            if value is not None:
                config_data[section][key] = value

    return Config.from_dict(config_data, base_dir=base_dir)


def _int_or_none(value: str | None) -> int | None:
    """Convert string to int, or return None."""
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None
