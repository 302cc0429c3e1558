"""
Application settings and configuration.

This module centralizes all configuration for an airwayseq run: filtering
and significance thresholds, the model design, plotting cutoffs and the
annotation lookup. Every value can be overridden through environment
variables (or a ``.env`` file in the working directory).
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Tuple

from dotenv import load_dotenv


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Settings:
    """
    Application settings with environment variable support.

    This class manages run-wide settings with fallbacks and environment
    variable overrides, so the same pipeline can be re-run with different
    thresholds without code changes.
    """

    def __init__(self):
        """Initialize application settings."""
        load_dotenv()
        self._parse_errors: List[str] = []

        # Logging settings
        self.LOG_LEVEL = os.environ.get("AIRWAYSEQ_LOG_LEVEL", "INFO").upper()

        # Filtering
        self.MIN_TOTAL_COUNT = self._env_number("AIRWAYSEQ_MIN_TOTAL_COUNT", "1", int)

        # Model and testing
        self.DESIGN = os.environ.get("AIRWAYSEQ_DESIGN", "~cell + dex")
        self.CONTRAST = [
            part.strip()
            for part in os.environ.get("AIRWAYSEQ_CONTRAST", "dex,trt,untrt").split(",")
        ]
        self.ALPHA = self._env_number("AIRWAYSEQ_ALPHA", "0.05", float)
        self.LFC_THRESHOLD = self._env_number("AIRWAYSEQ_LFC_THRESHOLD", "1.0", float)
        self.SHRINK_LFC = _env_bool("AIRWAYSEQ_SHRINK_LFC", "false")
        self.N_CPUS = self._env_number("AIRWAYSEQ_N_CPUS", "1", int)

        # Transform
        self.VST_BLIND = _env_bool("AIRWAYSEQ_VST_BLIND", "true")

        # Summaries and plots
        self.TOP_N = self._env_number("AIRWAYSEQ_TOP_N", "30", int)
        self.TOP_N_BOXPLOT = self._env_number("AIRWAYSEQ_TOP_N_BOXPLOT", "10", int)
        self.PCA_NTOP = self._env_number("AIRWAYSEQ_PCA_NTOP", "500", int)
        self.GROUP_COLUMN = os.environ.get("AIRWAYSEQ_GROUP_COLUMN", "dex")

        # Annotation lookup
        self.ANNOTATION_SPECIES = os.environ.get("AIRWAYSEQ_ANNOTATION_SPECIES", "human")
        self.ANNOTATION_SCOPE = os.environ.get("AIRWAYSEQ_ANNOTATION_SCOPE", "ensembl.gene")

        # Output
        self.OUTPUT_DIR = Path(os.environ.get("AIRWAYSEQ_OUTPUT_DIR", "airwayseq_results"))
        self.FIGURE_FORMATS = [
            fmt.strip()
            for fmt in os.environ.get("AIRWAYSEQ_FIGURE_FORMATS", "html").split(",")
            if fmt.strip()
        ]

        is_valid, error_msg = self.validate_configuration()
        # Let the CLI report this instead of failing at import time
        self._config_error = None if is_valid else error_msg

    def _env_number(self, name: str, default: str, cast):
        """Parse a numeric variable; a malformed value keeps the default and is reported."""
        raw = os.environ.get(name, default)
        try:
            return cast(raw)
        except ValueError:
            kind = "an integer" if cast is int else "a number"
            self._parse_errors.append(f"{name} must be {kind}, got '{raw}'")
            return cast(default)

    def get_all_settings(self) -> Dict[str, Any]:
        """
        Get all settings as a dictionary.

        Returns:
            dict: All settings
        """
        settings_dict = {}
        for attr in dir(self):
            if not attr.startswith("_") and not callable(getattr(self, attr)):
                settings_dict[attr] = getattr(self, attr)
        return settings_dict

    def get_setting(self, name: str, default: Any = None) -> Any:
        """
        Get a specific setting.

        Args:
            name: Setting name
            default: Default value if setting doesn't exist

        Returns:
            Value of the setting or default
        """
        return getattr(self, name, default)

    def validate_configuration(self) -> Tuple[bool, str]:
        """
        Validate threshold ranges and the contrast definition.

        Returns:
            tuple: (is_valid: bool, error_message: str)
        """
        errors: List[str] = list(self._parse_errors)

        if not 0 < self.ALPHA < 1:
            errors.append(f"AIRWAYSEQ_ALPHA must be in (0, 1), got {self.ALPHA}")
        if self.LFC_THRESHOLD < 0:
            errors.append(
                f"AIRWAYSEQ_LFC_THRESHOLD must be >= 0, got {self.LFC_THRESHOLD}"
            )
        if self.MIN_TOTAL_COUNT < 0:
            errors.append(
                f"AIRWAYSEQ_MIN_TOTAL_COUNT must be >= 0, got {self.MIN_TOTAL_COUNT}"
            )
        if len(self.CONTRAST) != 3:
            errors.append(
                "AIRWAYSEQ_CONTRAST must be 'factor,tested_level,reference_level', "
                f"got {self.CONTRAST}"
            )
        if self.TOP_N_BOXPLOT > self.TOP_N:
            errors.append(
                f"AIRWAYSEQ_TOP_N_BOXPLOT ({self.TOP_N_BOXPLOT}) cannot exceed "
                f"AIRWAYSEQ_TOP_N ({self.TOP_N})"
            )
        if self.N_CPUS < 1:
            errors.append(f"AIRWAYSEQ_N_CPUS must be >= 1, got {self.N_CPUS}")

        if errors:
            return False, "; ".join(errors)
        return True, ""

    @property
    def config_error(self):
        return self._config_error


# Create singleton instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get the application settings.

    Returns:
        Settings: Application settings
    """
    return settings
