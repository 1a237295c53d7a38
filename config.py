import json
from dataclasses import dataclass, field, asdict
from typing import Optional, Tuple
from pathlib import Path


REMAINDER_POLICIES = ("last", "spread", "strict")
IMAGE_FORMATS = ("jpg", "jpeg", "png")


class ConfigurationError(ValueError):
    """Raised when invocation parameters are invalid."""


@dataclass
class ImageConfig:
    """Output image resolution and sampling."""
    width: int = 600
    height: int = 600
    samples: int = 1


@dataclass
class SceneConfig:
    """Scene source and view plane geometry."""
    scene_file: Optional[str] = None
    background_size_x: float = 4.0
    background_size_y: float = 4.0
    background_distance: float = 15.0
    view_plane_distance: float = 5.0

    def view_plane_size(self) -> Tuple[float, float]:
        """Return view plane size (x, y) scaled from the background plane."""
        scale = self.view_plane_distance / self.background_distance
        return (self.background_size_x * scale, self.background_size_y * scale)


@dataclass
class PartitionConfig:
    """Work partitioning configuration."""
    remainder_policy: str = "last"


@dataclass
class ExchangeConfig:
    """Tile exchange configuration."""
    root: int = 0
    timeout: Optional[float] = None  # seconds, None waits forever
    poll_interval: float = 0.01


@dataclass
class OutputConfig:
    """Output configuration."""
    fig_name: str = "raytracing"
    image_format: str = "jpg"
    output_dir: str = "."
    save_raw: bool = False

    def get_output_path(self, size: int) -> Path:
        """Get image path for a run with `size` participants."""
        return Path(self.output_dir) / f"{self.fig_name}_{size}.{self.image_format}"

    def get_raw_path(self, size: int) -> Path:
        """Get raw HDF5 dump path for a run with `size` participants."""
        return Path(self.output_dir) / f"{self.fig_name}_{size}.h5"


@dataclass
class RenderConfig:
    """Main configuration container for all rendering settings."""
    image: ImageConfig = field(default_factory=ImageConfig)
    scene: SceneConfig = field(default_factory=SceneConfig)
    partition: PartitionConfig = field(default_factory=PartitionConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    @classmethod
    def from_json(cls, filepath: str) -> 'RenderConfig':
        """
        Load configuration from JSON file.

        Args:
            filepath: Path to JSON configuration file

        Returns:
            RenderConfig instance

        Example:
            config = RenderConfig.from_json('my_config.json')
        """
        with open(filepath, 'r') as f:
            data = json.load(f)

        try:
            return cls(
                image=ImageConfig(**data.get('image', {})),
                scene=SceneConfig(**data.get('scene', {})),
                partition=PartitionConfig(**data.get('partition', {})),
                exchange=ExchangeConfig(**data.get('exchange', {})),
                output=OutputConfig(**data.get('output', {}))
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration in {filepath}: {e}") from e

    def to_json(self, filepath: str):
        """
        Save configuration to JSON file.

        Args:
            filepath: Output JSON file path
        """
        data = {
            'image': asdict(self.image),
            'scene': asdict(self.scene),
            'partition': asdict(self.partition),
            'exchange': asdict(self.exchange),
            'output': asdict(self.output)
        }
        with open(filepath, 'w') as f:
            json.dump(data, f, indent=2)

    @classmethod
    def from_args(cls, args) -> 'RenderConfig':
        """
        Create configuration from command line arguments.

        Args:
            args: argparse.Namespace object with command line arguments

        Returns:
            RenderConfig instance
        """
        return cls(
            image=ImageConfig(
                width=args.width,
                height=args.height,
                samples=args.samples
            ),
            scene=SceneConfig(
                scene_file=args.scene_file or None
            ),
            partition=PartitionConfig(
                remainder_policy=args.remainder_policy
            ),
            exchange=ExchangeConfig(
                timeout=args.timeout
            ),
            output=OutputConfig(
                fig_name=args.fig_name,
                image_format=args.format,
                output_dir=args.output_dir,
                save_raw=args.save_raw
            )
        )

    def validate(self) -> 'RenderConfig':
        """
        Check every parameter before any partitioning or rendering.

        Raises:
            ConfigurationError: on the first invalid value
        """
        for name in ('width', 'height', 'samples'):
            value = getattr(self.image, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigurationError(f"image.{name} must be a positive integer, got {value!r}")

        if self.scene.view_plane_distance <= 0 or self.scene.background_distance <= 0:
            raise ConfigurationError("scene distances must be positive")

        if self.partition.remainder_policy not in REMAINDER_POLICIES:
            raise ConfigurationError(
                f"Unknown remainder policy {self.partition.remainder_policy!r}, "
                f"expected one of {REMAINDER_POLICIES}"
            )

        if self.exchange.root < 0:
            raise ConfigurationError(f"exchange.root must be >= 0, got {self.exchange.root}")
        if self.exchange.timeout is not None and self.exchange.timeout <= 0:
            raise ConfigurationError(f"exchange.timeout must be positive, got {self.exchange.timeout}")
        if self.exchange.poll_interval <= 0:
            raise ConfigurationError(
                f"exchange.poll_interval must be positive, got {self.exchange.poll_interval}"
            )

        if self.output.image_format.lower() not in IMAGE_FORMATS:
            raise ConfigurationError(
                f"Unknown image format {self.output.image_format!r}, expected one of {IMAGE_FORMATS}"
            )
        return self

    def __str__(self) -> str:
        """Return a readable string representation of the configuration."""
        timeout = f"{self.exchange.timeout}s" if self.exchange.timeout else "none"
        lines = [
            "RenderConfig:",
            f"  Image: {self.image.width}x{self.image.height}, samples={self.image.samples}",
            f"  Scene: {self.scene.scene_file or 'built-in'}",
            f"  Partition: remainder policy={self.partition.remainder_policy}",
            f"  Exchange: root={self.exchange.root}, timeout={timeout}",
            f"  Output: {self.output.fig_name}.{self.output.image_format} in {self.output.output_dir}"
            f"{' (+raw)' if self.output.save_raw else ''}"
        ]
        return "\n".join(lines)
