"""Configuration loader for the ingestion and scoring pipeline."""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from jobcatalog.domain.job import JobSource
from jobcatalog.domain.lifecycle import DEFAULT_EXPIRE_DAYS, DEFAULT_STALE_DAYS
from jobcatalog.domain.matching import ScoringWeights

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILES = ["pipeline.yml", "pipeline.yaml"]


def get_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Load the YAML configuration file.

    Args:
        config_file: Path to the file; the default names are tried when omitted

    Returns:
        Parsed configuration, empty when no file exists

    Raises:
        FileNotFoundError: If an explicitly named file does not exist
        RuntimeError: If the file cannot be parsed
    """
    if config_file is None:
        for fname in DEFAULT_CONFIG_FILES:
            if Path(fname).exists():
                config_file = fname
                break
        else:
            return {}
    if not Path(config_file).exists():
        raise FileNotFoundError(f"Config file not found: {config_file}")
    try:
        with open(config_file, 'r') as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise RuntimeError(f"Failed to load config: {e}")


@dataclass
class DedupSettings:
    threshold: float = 0.85
    date_window_days: float = 3
    description_prefix: int = 500


@dataclass
class ScoringSettings:
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    recency_half_life_days: float = 14
    recommended_threshold: float = 70
    score_cutoff: float = 0
    on_demand_timeout: float = 0.3
    cache_ttl: float = 60
    chunk_size: int = 200
    batch_deadline: Optional[float] = None


@dataclass
class LifecycleSettings:
    stale_days: int = 21
    expire_days: Optional[int] = 45
    source_stale_days: Dict[JobSource, int] = field(default_factory=lambda: dict(DEFAULT_STALE_DAYS))
    source_expire_days: Dict[JobSource, int] = field(default_factory=lambda: dict(DEFAULT_EXPIRE_DAYS))


class Config:
    """Configuration manager with environment variable, .env and YAML support.

    Environment variables take precedence over the YAML file, which takes
    precedence over built-in defaults.
    """

    def __init__(self, env_file: Optional[str] = None, config_file: Optional[str] = None):
        """Initialize configuration.

        Args:
            env_file: Optional path to .env file
            config_file: Optional path to a YAML file (pipeline.yml by default)
        """
        if env_file and os.path.exists(env_file):
            load_dotenv(env_file)
            logger.info(f"Loaded configuration from {env_file}")
        elif os.path.exists(".env"):
            load_dotenv(".env")
            logger.info("Loaded configuration from .env file")
        else:
            logger.debug("No .env file found, using environment variables only")
        self.file_config = get_config(config_file)

    def get(self, key: str, default: Any = None, required: bool = False) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found
            required: Whether the key is required

        Returns:
            Configuration value

        Raises:
            ValueError: If required key is missing
        """
        value = os.getenv(key, default)

        if required and value is None:
            raise ValueError(f"Required configuration key '{key}' is missing")

        return value

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key, str(default).lower())
        return str(value).lower() in ('true', '1', 'yes', 'on')

    def get_int(self, key: str, default: Optional[int] = 0) -> Optional[int]:
        value = self.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except (ValueError, TypeError):
            logger.warning(f"Invalid integer value for {key}: {value}, using default {default}")
            return default

    def get_float(self, key: str, default: Optional[float] = 0.0) -> Optional[float]:
        value = self.get(key)
        if value is None:
            return default
        try:
            return float(value)
        except (ValueError, TypeError):
            logger.warning(f"Invalid float value for {key}: {value}, using default {default}")
            return default

    def get_list(self, key: str, default: Optional[list] = None, separator: str = ",") -> list:
        """Get list configuration value.

        Args:
            key: Configuration key
            default: Default list value
            separator: List item separator

        Returns:
            List value
        """
        if default is None:
            default = []

        value = self.get(key)
        if not value:
            return default

        return [item.strip() for item in str(value).split(separator) if item.strip()]

    def section(self, name: str) -> Dict[str, Any]:
        """A top-level mapping from the YAML file."""
        value = self.file_config.get(name) if isinstance(self.file_config, dict) else None
        return value if isinstance(value, dict) else {}

    def get_database_config(self) -> Dict[str, Any]:
        """Get database configuration.

        Returns:
            Database configuration dictionary
        """
        section = self.section('database')
        return {
            'url': self.get('DATABASE_URL', section.get('url', 'sqlite:///jobs.db')),
            'echo': self.get_bool('DATABASE_ECHO', bool(section.get('echo', False))),
        }

    def get_dedup_config(self) -> Dict[str, Any]:
        section = self.section('dedup')
        return {
            'threshold': self.get_float('DEDUP_THRESHOLD', section.get('threshold', 0.85)),
            'date_window_days': self.get_float('DEDUP_DATE_WINDOW_DAYS', section.get('date_window_days', 3)),
            'description_prefix': self.get_int('DEDUP_DESCRIPTION_PREFIX', section.get('description_prefix', 500)),
        }

    def get_scoring_config(self) -> Dict[str, Any]:
        """Get relevance scoring and ranking configuration.

        Returns:
            Scoring configuration dictionary; weights are a name -> weight mapping
        """
        section = self.section('scoring')
        file_weights = section.get('weights') or {}
        weights = {
            name: self.get_float(f"SCORING_WEIGHT_{name.upper()}", file_weights.get(name, default))
            for name, default in ScoringWeights().as_dict().items()
        }
        return {
            'weights': weights,
            'recency_half_life_days': self.get_float(
                'SCORING_RECENCY_HALF_LIFE_DAYS', section.get('recency_half_life_days', 14)),
            'recommended_threshold': self.get_float(
                'SCORING_RECOMMENDED_THRESHOLD', section.get('recommended_threshold', 70)),
            'score_cutoff': self.get_float('SCORING_CUTOFF', section.get('score_cutoff', 0)),
            'on_demand_timeout': self.get_float('SCORING_TIMEOUT_MS', section.get('timeout_ms', 300)) / 1000,
            'cache_ttl': self.get_float('SCORING_CACHE_TTL', section.get('cache_ttl', 60)),
            'chunk_size': self.get_int('SCORING_CHUNK_SIZE', section.get('chunk_size', 200)),
            'batch_deadline': self.get_float('SCORING_BATCH_DEADLINE', section.get('batch_deadline')),
        }

    def get_lifecycle_config(self) -> Dict[str, Any]:
        """Get lifecycle configuration.

        Per-source windows come from the ``lifecycle.sources`` YAML mapping or
        ``STALE_DAYS_<SOURCE>`` / ``EXPIRE_DAYS_<SOURCE>`` variables.
        """
        section = self.section('lifecycle')
        per_source = section.get('sources') or {}
        source_stale = {}
        source_expire = {}
        for source in JobSource:
            rule = per_source.get(source.value) or {}
            stale = self.get_int(f"STALE_DAYS_{source.value}", rule.get('stale_days', DEFAULT_STALE_DAYS.get(source)))
            expire = self.get_int(
                f"EXPIRE_DAYS_{source.value}", rule.get('expire_days', DEFAULT_EXPIRE_DAYS.get(source)))
            if stale is not None:
                source_stale[source] = stale
            if expire is not None:
                source_expire[source] = expire
        return {
            'stale_days': self.get_int('STALE_DAYS', section.get('stale_days', 21)),
            'expire_days': self.get_int('EXPIRE_DAYS', section.get('expire_days', 45)),
            'source_stale_days': source_stale,
            'source_expire_days': source_expire,
        }

    def dedup_settings(self) -> DedupSettings:
        return DedupSettings(**self.get_dedup_config())

    def scoring_settings(self) -> ScoringSettings:
        values = self.get_scoring_config()
        values['weights'] = ScoringWeights(**values['weights'])
        return ScoringSettings(**values)

    def lifecycle_settings(self) -> LifecycleSettings:
        return LifecycleSettings(**self.get_lifecycle_config())

    def get_all_config(self) -> Dict[str, Any]:
        """Get all configuration as a dictionary.

        Returns:
            Complete configuration dictionary
        """
        return {
            'database': self.get_database_config(),
            'dedup': self.get_dedup_config(),
            'scoring': self.get_scoring_config(),
            'lifecycle': self.get_lifecycle_config(),
        }
