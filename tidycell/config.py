"""
Configuration for tidycell.

Holds the process-wide defaults used by the tidy verbs and the renderer.
"""

from dataclasses import asdict, dataclass, field, replace


@dataclass(frozen=True)
class TidyConfig:
    """
    Library configuration.

    Attributes:
        default_assay_preference: Assay names tried in order when a dataset is
            constructed without an explicit default assay
        max_display_rows: Maximum rows shown by the tidy renderer
        long_feature_column: Name of the feature id column in long joins
        long_value_column: Name of the value column in long joins
        nest_column: Default name of the payload column created by nest()
        map_max_workers: Default worker count for NestedTable.map (None = serial)
    """

    default_assay_preference: tuple[str, ...] = field(
        default_factory=lambda: ("logcounts", "counts", "X")
    )
    max_display_rows: int = 10
    long_feature_column: str = "feature_id"
    long_value_column: str = "value"
    nest_column: str = "data"
    map_max_workers: int | None = None

    def __post_init__(self):
        """Validate settings."""
        if self.max_display_rows < 1:
            raise ValueError(
                f"max_display_rows must be positive: {self.max_display_rows}"
            )
        if self.long_feature_column == self.long_value_column:
            raise ValueError(
                "long_feature_column and long_value_column must differ: "
                f"{self.long_feature_column}"
            )
        if self.map_max_workers is not None and self.map_max_workers < 1:
            raise ValueError(
                f"map_max_workers must be positive or None: {self.map_max_workers}"
            )
        # Accept lists from callers
        object.__setattr__(
            self, "default_assay_preference", tuple(self.default_assay_preference)
        )

    def to_dict(self) -> dict:
        """Convert config to dictionary for serialization."""
        return asdict(self)


_config = TidyConfig()


def get_config() -> TidyConfig:
    """Return the active configuration"""
    return _config


def set_config(**overrides) -> TidyConfig:
    """
    Replace fields of the active configuration.

    Args:
        **overrides: TidyConfig field values

    Returns:
        The new active configuration

    Raises:
        TypeError: If an unknown field is passed
        ValueError: If a value fails validation
    """
    global _config
    _config = replace(_config, **overrides)
    return _config


def reset_config() -> TidyConfig:
    """Restore the default configuration"""
    global _config
    _config = TidyConfig()
    return _config
