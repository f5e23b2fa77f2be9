"""World configuration.

Default avatar geometry and placement plus the fixed camera viewpoints.
Clients read it once at start-up; administrators replace it through the
token-gated HTTP endpoint. It has no bearing on relay or signalling
behaviour.
"""

import logging
from pathlib import Path

from pydantic import BaseModel, Field

from src.mingle.protocol import Vec3

logger = logging.getLogger(__name__)


class AvatarDefaults(BaseModel):
    """Geometry and placement applied to every newly spawned avatar."""

    position: Vec3 = Field(default_factory=lambda: Vec3(x=0.0, y=1.6, z=0.0))
    rotation: Vec3 = Field(default_factory=Vec3)
    scale: float = Field(default=1.0, gt=0, le=100, description="Uniform avatar scale")
    model_url: str | None = Field(default=None, description="Avatar model asset URL")


class Viewpoint(BaseModel):
    """Fixed camera placement selectable from the UI."""

    position: Vec3
    rotation: Vec3 = Field(default_factory=Vec3)


def _default_viewpoints() -> dict[str, Viewpoint]:
    return {
        "high": Viewpoint(
            position=Vec3(x=10.0, y=10.0, z=10.0),
            rotation=Vec3(x=-35.0, y=-45.0, z=0.0),
        ),
    }


class WorldConfig(BaseModel):
    """Root world configuration document."""

    avatar: AvatarDefaults = Field(default_factory=AvatarDefaults)
    spawn_radius: float = Field(
        default=0.0, ge=0, le=1000, description="Randomise spawn within this radius"
    )
    viewpoints: dict[str, Viewpoint] = Field(default_factory=_default_viewpoints)


class WorldConfigStore:
    """Holds the current world configuration, optionally backed by a YAML file."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._config = WorldConfig()

    @property
    def config(self) -> WorldConfig:
        return self._config

    def load(self) -> WorldConfig:
        """Load from the backing file if it exists; defaults otherwise.

        Raises:
            ValueError: If the file is not valid YAML or fails validation
        """
        import yaml  # type: ignore[import-untyped]

        if self.path is None or not self.path.exists():
            return self._config

        with open(self.path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {self.path}: {e}") from e

        self._config = WorldConfig.model_validate(data)
        logger.info("World configuration loaded", extra={"path": str(self.path)})
        return self._config

    def replace(self, config: WorldConfig) -> None:
        """Persist a new configuration when file-backed, then swap it in.

        Blocks on file I/O; call it from a worker thread inside the event loop.

        Raises:
            OSError: If the file cannot be written; the current configuration
                is kept
        """
        if self.path is not None:
            self._save(self.path, config)
        self._config = config

    def _save(self, path: Path, config: WorldConfig) -> None:
        import yaml  # type: ignore[import-untyped]

        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(config.model_dump(mode="json"), f, sort_keys=False)
        tmp_path.replace(path)
        logger.info("World configuration saved", extra={"path": str(path)})
