#!/usr/bin/env python
# coding: utf-8

"""
Analysis configuration manager for reference-free deconvolution runs.

Provides a thread-safe singleton that centralizes probe selection, \
factorization, bootstrap, scree and global settings with full validation \
and multiple file format support.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from copy import deepcopy
from importlib.resources import files
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Union

import toml
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from methmix.utils.logger import apply_global_settings, logger

SECTIONS = (
    "probe_selection",
    "factorization",
    "bootstrap",
    "scree",
    "global_settings",
)


# Pydantic Schemas


class ProbeSelectionSchema(BaseModel):
    """Settings for probe subsetting before factorization."""

    strategy: str = Field("variance", pattern="^(variance|confounder)$")
    n_top_probes: int = Field(10_000, ge=1, description="Probes kept by variance")
    covariates: List[str] = Field(default_factory=lambda: ["age", "sex"])
    alpha: float = Field(0.05, gt=0.0, lt=1.0)
    adjust_method: str = Field(
        "fdr_bh", pattern="^(bonferroni|holm|fdr_bh|fdr_by|sidak|none)$"
    )
    min_observed: int = Field(3, ge=2, description="Minimum non-missing samples")


class FactorizationSchema(BaseModel):
    """Settings for the RefFreeCellMix sweep."""

    k_min: int = Field(1, ge=1)
    k_max: int = Field(6, ge=1)
    iters: int = Field(10, ge=1)
    linkage_method: str = Field("ward", pattern="^(ward|complete|average|single)$")
    n_jobs: int = 1
    large_ok: bool = False

    @field_validator("k_max")
    @classmethod
    def validate_k_max(cls, v) -> int:
        if v > 50:
            logger.warning(f"Unusually large k_max: {v}")
        return v

    @model_validator(mode="after")
    def validate_k_range(self) -> "FactorizationSchema":
        if self.k_max < self.k_min:
            raise ValueError("k_max must be >= k_min")
        return self


class BootstrapSchema(BaseModel):
    """Settings for the deviance bootstrap used to choose K."""

    replicates: int = Field(100, ge=1)
    bootstrap_iterations: int = Field(5, ge=0)
    epsilon: float = Field(1e-9, gt=0.0)
    trim: float = Field(0.25, ge=0.0, lt=0.5)
    evaluate_on: str = Field("full", pattern="^(full|oob)$")


class ScreeSchema(BaseModel):
    """Settings for the PCA scree heuristic."""

    max_components: int = Field(20, ge=2)
    k_offset: int = Field(1, ge=0)


class GlobalSettingsSchema(BaseModel):
    """Global configuration settings."""

    random_seed: Optional[int] = 1234
    k_method: str = Field("deviance", pattern="^(deviance|scree)$")
    output_dir: str = Field("output", min_length=1)
    log_level: str = Field("INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_to_file: bool = True


class AnalysisConfigModel(BaseModel):
    """Complete analysis configuration model."""

    probe_selection: ProbeSelectionSchema = Field(default_factory=ProbeSelectionSchema)
    factorization: FactorizationSchema = Field(default_factory=FactorizationSchema)
    bootstrap: BootstrapSchema = Field(default_factory=BootstrapSchema)
    scree: ScreeSchema = Field(default_factory=ScreeSchema)
    global_settings: GlobalSettingsSchema = Field(default_factory=GlobalSettingsSchema)


# Utility Functions


def _atomic_write(path: Union[str, Path], content: Union[str, bytes]) -> None:
    """
    Write content to a file atomically using a temporary file.

    Parameters
    ----------
    path : str or Path
        Destination file path.
    content : str or bytes
        Content to write.

    Raises
    ------
    OSError
        If the write operation fails.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    content_bytes = content.encode("utf-8") if isinstance(content, str) else content

    tmp_file = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb", dir=str(path.parent), delete=False
        ) as tmp:
            tmp_file = Path(tmp.name)
            tmp.write(content_bytes)
            tmp.flush()
            os.fsync(tmp.fileno())

        os.replace(str(tmp_file), str(path))
        logger.debug(f"Successfully wrote file: {path}")

    except OSError as e:
        logger.error(f"Failed to write file {path}: {e}")
        if tmp_file and tmp_file.exists():
            tmp_file.unlink()
        raise


def _read_python_literal(path: Path) -> Dict[str, Any]:
    """
    Parse a Python literal dictionary from a file.

    Raises
    ------
    ValueError
        If the file doesn't contain a valid dictionary.
    """
    import ast

    try:
        text = path.read_text(encoding="utf-8")
        obj = ast.literal_eval(text)
    except Exception as e:
        raise ValueError(f"Failed to parse Python literal from {path}: {e}")

    if not isinstance(obj, dict):
        raise ValueError(f"File {path} must contain a dictionary at top level")

    return obj


def _deep_update(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively update ``base`` (in place) with values from ``updates``."""
    for key, value in updates.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


# AnalysisConfig Singleton Class
class AnalysisConfig:
    """
    Thread-safe singleton for deconvolution analysis settings.

    Settings are read from the packaged ``defaults.json`` sidecar and can be
    overridden by a user file in JSON, YAML, TOML or Python-literal format.

    Parameters
    ----------
    config_file : str or Path, optional
        Configuration file to load on initialization.
    """

    _instance: Optional["AnalysisConfig"] = None
    _lock = RLock()

    def __new__(cls, config_file: Optional[Union[str, Path]] = None):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
            return cls._instance

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        if hasattr(self, "_initialized") and self._initialized:
            return

        self._cfg_path: Optional[Path] = None
        self._data_lock = RLock()
        self._raw: Dict[str, Any] = {}
        self.model: Optional[AnalysisConfigModel] = None

        self._load_sidecar_config()

        if config_file is not None:
            try:
                self.load_file(config_file)
                logger.info(f"Loaded user config from {config_file}")
            except Exception as e:
                logger.error(f"Failed to load config file {config_file}: {e}")
                raise

        self._validate_and_set(self._raw)
        self._initialized = True

    def _load_sidecar_config(self) -> None:
        """Load defaults from the packaged sidecar file, if present."""
        candidates = [
            files(__package__) / "defaults.json",
            Path.cwd() / "methmix_defaults.json",
        ]
        for sidecar_path in candidates:
            if sidecar_path.is_file():
                self._raw = json.loads(sidecar_path.read_text(encoding="utf-8"))
                logger.debug(f"Loaded sidecar config from {sidecar_path}")
                return
        logger.warning("No defaults.json found; using built-in schema defaults")
        self._raw = {}

    @contextmanager
    def _transaction(self):
        """
        Context manager for atomic configuration updates.

        Restores the raw dictionary and every section if the body raises.
        """
        with self._data_lock:
            backup = deepcopy(self._raw)
            backup_sections = {
                name: deepcopy(getattr(self, name))
                for name in SECTIONS
                if hasattr(self, name)
            }
            backup_model = self.model
            try:
                yield
            except Exception:
                self._raw = backup
                for name, value in backup_sections.items():
                    setattr(self, name, value)
                self.model = backup_model
                if self.model is not None:
                    apply_global_settings(self.global_settings)
                raise

    # Loading and Saving
    def load_file(self, path: Union[str, Path]) -> None:
        """
        Load configuration from a file and merge it over the current settings.

        Supported formats: JSON, YAML, TOML, Python literal.

        Raises
        ------
        FileNotFoundError
            If ``path`` does not exist.
        ValueError
            If the extension is unsupported.
        ValidationError
            If the merged configuration is invalid.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        loaded = self._load_by_format(path, path.suffix.lower())
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {path} must contain a mapping")

        with self._transaction():
            merged = _deep_update(deepcopy(self._raw), loaded)
            self._validate_and_set(merged)
            self._cfg_path = path

        logger.info(f"Successfully loaded configuration from {path}")

    @staticmethod
    def _load_by_format(path: Path, ext: str) -> Dict[str, Any]:
        """Load configuration based on file format."""
        if ext == ".json":
            return json.loads(path.read_text(encoding="utf-8"))
        elif ext in (".yml", ".yaml"):
            return yaml.safe_load(path.read_text(encoding="utf-8"))
        elif ext == ".toml":
            return toml.loads(path.read_text(encoding="utf-8"))
        elif ext in (".py", ".txt"):
            return _read_python_literal(path)
        else:
            raise ValueError(f"Unsupported file extension: {ext}")

    def save_file(self, path: Union[str, Path], fmt: Optional[str] = None) -> None:
        """
        Save current configuration to a file.

        Parameters
        ----------
        path : str or Path
            Destination file path.
        fmt : str, optional
            Format (json, yaml, toml). Inferred from extension if not provided.

        Raises
        ------
        ValueError
            If format is unsupported.
        """
        path = Path(path)
        fmt = (fmt or path.suffix.lstrip(".")).lower()

        with self._data_lock:
            data = self._export_config()

        if fmt in ("json", ""):
            content = json.dumps(data, indent=2)
        elif fmt in ("yml", "yaml"):
            content = yaml.safe_dump(data, sort_keys=False)
        elif fmt == "toml":
            content = toml.dumps(data)
        else:
            raise ValueError(f"Unsupported format: {fmt}")

        _atomic_write(path, content)
        logger.info(f"Configuration saved to {path}")
        self._cfg_path = path

    def _export_config(self) -> Dict[str, Any]:
        return {name: deepcopy(getattr(self, name)) for name in SECTIONS}

    # Validation
    def _validate_and_set(self, raw: Dict[str, Any]) -> None:
        """
        Validate configuration and update internal state.

        Raises
        ------
        ValidationError
            If validation fails.
        """
        try:
            validated = AnalysisConfigModel(**raw)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise

        with self._data_lock:
            self.model = validated
            for name in SECTIONS:
                setattr(self, name, getattr(validated, name).model_dump())
            self._raw = raw
            apply_global_settings(self.global_settings)

    # Query Methods
    def get_section(self, section: str) -> Dict[str, Any]:
        """
        Return a copy of one configuration section.

        Raises
        ------
        KeyError
            If the section name is unknown.
        """
        if section not in SECTIONS:
            raise KeyError(f"Unknown config section '{section}'. Options: {SECTIONS}")
        with self._data_lock:
            return deepcopy(getattr(self, section))

    def k_range(self) -> List[int]:
        """Candidate K values from the factorization section."""
        with self._data_lock:
            fac = self.factorization
            return list(range(fac["k_min"], fac["k_max"] + 1))

    def update(self, section: str, **values: Any) -> None:
        """
        Update keys of one section; the change is rolled back if invalid.

        Examples
        --------
        >>> get_config().update("bootstrap", replicates=20)
        """
        if section not in SECTIONS:
            raise KeyError(f"Unknown config section '{section}'. Options: {SECTIONS}")
        with self._transaction():
            raw = deepcopy(self._raw)
            raw.setdefault(section, {}).update(values)
            self._validate_and_set(raw)
            logger.info(f"Updated config section '{section}': {sorted(values)}")

    # Utility Methods
    def reload(self) -> None:
        """Reload configuration from the last loaded file."""
        if self._cfg_path:
            self.load_file(self._cfg_path)
            logger.info(f"Reloaded configuration from {self._cfg_path}")
        else:
            self._validate_and_set(self._raw)
            logger.info("Re-validated configuration (no file path)")

    def migrate(self, migrator: Callable[[Dict], Dict]) -> None:
        """Apply a function that takes and returns the raw config dict."""
        with self._transaction():
            updated = migrator(deepcopy(self._raw))
            _deep_update(self._raw, updated)
            self._validate_and_set(self._raw)
            logger.info("Configuration migrated successfully")

    def to_dict(self) -> Dict[str, Any]:
        """Export current configuration as a dictionary."""
        with self._data_lock:
            return self._export_config()


# Global Singleton Access
_global_analysis_config: Optional[AnalysisConfig] = None


def get_config() -> AnalysisConfig:
    """Get the global AnalysisConfig singleton instance."""
    global _global_analysis_config
    if _global_analysis_config is None:
        _global_analysis_config = AnalysisConfig()
    return _global_analysis_config


def reset_config() -> None:
    """Reset the global configuration instance (primarily for testing)."""
    global _global_analysis_config
    _global_analysis_config = None
    AnalysisConfig._instance = None
    logger.debug("Global configuration reset")


# Convenience Functions


def load_file(path: Union[str, Path]) -> None:
    """Load configuration from a file. See AnalysisConfig.load_file()."""
    get_config().load_file(path=path)


def save_file(path: Union[str, Path], fmt: Optional[str] = None) -> None:
    """Save configuration to a file. See AnalysisConfig.save_file()."""
    get_config().save_file(path=path, fmt=fmt)


def reload() -> None:
    """Reload configuration. See AnalysisConfig.reload()."""
    get_config().reload()


def migrate(migrator: Callable[[Dict], Dict]) -> None:
    """Apply a migration function. See AnalysisConfig.migrate()."""
    get_config().migrate(migrator)
