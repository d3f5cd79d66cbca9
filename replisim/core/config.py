import base64
import binascii
from dataclasses import dataclass, field
from pathlib import Path

from replisim.core.errors import ConfigurationError
from replisim.core.retry import RetryPolicy
from replisim.datastructures.type_aliases import (
    CapsKey,
    DurationSeconds,
    HopCount,
    ImplementationName,
    PortNumber,
)

DEFAULT_CAPS: CapsKey = "1KHLiKZvAvjbY1ziZEHMXawbCEIM6qwjCDm3VYRan/s="
DEFAULT_HOPS: HopCount = 2
DEFAULT_BASE_PORT: PortNumber = 18888
SHIM_FILENAME = "sim-shim.sh"


def validate_caps(caps: CapsKey) -> CapsKey:
    """Return ``caps`` unchanged if it is valid standard base64."""
    try:
        base64.b64decode(caps, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(f"caps {caps} was not a valid base64 sequence") from e
    return caps


@dataclass(slots=True)
class SimulatorSettings:
    """Execution engine configuration settings."""

    caps: CapsKey = DEFAULT_CAPS
    hops: HopCount = DEFAULT_HOPS
    base_port: PortNumber = DEFAULT_BASE_PORT
    fixtures_dir: Path | None = None
    out_dir: Path = Path("./puppets")
    verbose: bool = False

    # implementation name (shim folder name) -> folder containing sim-shim.sh
    implementations: dict[ImplementationName, Path] = field(default_factory=dict)

    start_settle: DurationSeconds = 1.0
    connect_settle: DurationSeconds = 0.5
    stop_grace: DurationSeconds = 2.0
    waituntil_timeout: DurationSeconds = 15.0
    waituntil_retry: RetryPolicy = field(default_factory=RetryPolicy)
    max_port_attempts: int = 50

    def __post_init__(self) -> None:
        validate_caps(self.caps)
        if self.hops < 0:
            raise ConfigurationError(f"hops must be non-negative, got {self.hops}")
        if self.max_port_attempts < 1:
            raise ConfigurationError("at least one port allocation attempt is needed")

    @classmethod
    def with_implementations(
        cls, implementation_dirs: list[str | Path], **kwargs: object
    ) -> "SimulatorSettings":
        """Index implementation folders by their last path component.

        Every folder must exist and contain a ``sim-shim.sh`` launcher.
        """
        implementations: dict[ImplementationName, Path] = {}
        for entry in implementation_dirs:
            folder = Path(entry).resolve()
            if not folder.is_dir():
                raise ConfigurationError(
                    f"language implementation folder {entry} does not exist"
                )
            if not (folder / SHIM_FILENAME).is_file():
                raise ConfigurationError(
                    f"{SHIM_FILENAME} is missing from root of implementation folder {entry}"
                )
            implementations[folder.name] = folder
        return cls(implementations=implementations, **kwargs)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class ExpectationSettings:
    """Expectation engine configuration."""

    max_hops: HopCount = DEFAULT_HOPS
    replicate_blocked: bool = False

    def __post_init__(self) -> None:
        if self.max_hops < 0:
            raise ConfigurationError(
                f"max hops must be non-negative, got {self.max_hops}"
            )


@dataclass(frozen=True, slots=True)
class GeneratorSettings:
    """Test generator configuration."""

    implementation: ImplementationName = "ssb-server"
    focused_count: int = 2
    max_hops: HopCount = DEFAULT_HOPS
    seed: int = 0
    passes: int = 2

    def __post_init__(self) -> None:
        if self.focused_count < 1:
            raise ConfigurationError("the focus group needs at least one puppet")
        if self.max_hops < 0:
            raise ConfigurationError(
                f"max hops must be non-negative, got {self.max_hops}"
            )
        if self.passes < 1:
            raise ConfigurationError("at least one connection pass is needed")
