"""Tests for configuration loading functionality."""
import os
from pathlib import Path

import pytest

from jobcatalog.config import Config, get_config
from jobcatalog.domain.job import JobSource
from jobcatalog.domain.matching import ScoringWeights

PIPELINE_YAML = """
database:
  url: sqlite:///catalog.db
dedup:
  threshold: 0.9
  date_window_days: 5
scoring:
  timeout_ms: 150
  score_cutoff: 40
  weights:
    skill_match: 0.4
    salary_fit: 0.2
    location_fit: 0.2
    experience_fit: 0.1
    recency: 0.1
lifecycle:
  stale_days: 10
  sources:
    THE_MUSE:
      stale_days: 7
      expire_days: 12
"""


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Run in an empty directory with no pipeline variables set."""
    env = {
        k: v for k, v in os.environ.items()
        if not k.startswith(('DATABASE_', 'DEDUP_', 'SCORING_', 'STALE_DAYS', 'EXPIRE_DAYS'))
    }
    monkeypatch.setattr(os, "environ", env)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def pipeline_yaml(clean_env: Path) -> Path:
    path = clean_env / "pipeline.yml"
    path.write_text(PIPELINE_YAML)
    return path


def test_defaults_without_files(clean_env):
    """Test that built-in defaults apply when nothing is configured."""
    config = Config()

    assert config.file_config == {}
    assert config.get_database_config() == {'url': 'sqlite:///jobs.db', 'echo': False}
    dedup = config.dedup_settings()
    assert dedup.threshold == 0.85
    assert dedup.date_window_days == 3
    assert dedup.description_prefix == 500

    scoring = config.scoring_settings()
    assert scoring.weights == ScoringWeights()
    assert scoring.on_demand_timeout == pytest.approx(0.3)
    assert scoring.batch_deadline is None

    lifecycle = config.lifecycle_settings()
    assert lifecycle.stale_days == 21
    assert lifecycle.expire_days == 45
    assert lifecycle.source_stale_days[JobSource.THE_MUSE] == 14
    assert JobSource.INDEED not in lifecycle.source_stale_days


def test_yaml_file_is_picked_up(pipeline_yaml):
    """Test that pipeline.yml in the working directory is loaded."""
    config = Config()

    assert config.get_database_config()['url'] == 'sqlite:///catalog.db'
    assert config.dedup_settings().threshold == 0.9
    assert config.dedup_settings().date_window_days == 5

    scoring = config.scoring_settings()
    assert scoring.on_demand_timeout == pytest.approx(0.15)
    assert scoring.score_cutoff == 40
    assert scoring.weights.skill_match == 0.4

    lifecycle = config.lifecycle_settings()
    assert lifecycle.stale_days == 10
    assert lifecycle.source_stale_days[JobSource.THE_MUSE] == 7
    assert lifecycle.source_expire_days[JobSource.THE_MUSE] == 12
    assert lifecycle.source_stale_days[JobSource.USAJOBS] == 30


def test_environment_overrides_yaml(pipeline_yaml, monkeypatch):
    monkeypatch.setenv("DEDUP_THRESHOLD", "0.95")
    monkeypatch.setenv("SCORING_TIMEOUT_MS", "500")
    monkeypatch.setenv("STALE_DAYS_THE_MUSE", "3")
    monkeypatch.setenv("DATABASE_ECHO", "yes")

    config = Config()

    assert config.dedup_settings().threshold == 0.95
    assert config.scoring_settings().on_demand_timeout == pytest.approx(0.5)
    assert config.lifecycle_settings().source_stale_days[JobSource.THE_MUSE] == 3
    assert config.get_database_config()['echo'] is True


def test_env_file_is_loaded(clean_env):
    env_file = clean_env / "custom.env"
    env_file.write_text("DATABASE_URL=sqlite:///from-env.db\nSCORING_CHUNK_SIZE=50\n")

    config = Config(env_file=str(env_file))

    assert config.get_database_config()['url'] == 'sqlite:///from-env.db'
    assert config.scoring_settings().chunk_size == 50


def test_explicit_config_file(clean_env):
    path = clean_env / "elsewhere.yaml"
    path.write_text("dedup:\n  threshold: 0.7\n")
    assert Config(config_file=str(path)).dedup_settings().threshold == 0.7


def test_missing_explicit_config_file(clean_env):
    with pytest.raises(FileNotFoundError):
        get_config("nonexistent.yml")


def test_malformed_yaml(clean_env):
    path = clean_env / "pipeline.yml"
    path.write_text("dedup: [unclosed\n")
    with pytest.raises(RuntimeError, match="Failed to load config"):
        get_config()


def test_invalid_numbers_fall_back_to_default(clean_env, monkeypatch):
    monkeypatch.setenv("DEDUP_DESCRIPTION_PREFIX", "lots")
    monkeypatch.setenv("DEDUP_THRESHOLD", "high")
    config = Config()
    assert config.dedup_settings().description_prefix == 500
    assert config.dedup_settings().threshold == 0.85


def test_weights_that_do_not_sum_to_one_are_rejected(clean_env, monkeypatch):
    monkeypatch.setenv("SCORING_WEIGHT_SKILL_MATCH", "0.9")
    with pytest.raises(ValueError, match="sum to 1"):
        Config().scoring_settings()


def test_typed_getters(clean_env, monkeypatch):
    monkeypatch.setenv("PIPELINE_FLAG", "on")
    monkeypatch.setenv("PIPELINE_SOURCES", "REMOTEOK, THE_MUSE,,USAJOBS")
    config = Config()

    assert config.get_bool("PIPELINE_FLAG") is True
    assert config.get_bool("PIPELINE_MISSING", default=True) is True
    assert config.get_list("PIPELINE_SOURCES") == ["REMOTEOK", "THE_MUSE", "USAJOBS"]
    assert config.get_list("PIPELINE_MISSING") == []
    assert config.get_int("PIPELINE_MISSING", default=None) is None
    with pytest.raises(ValueError, match="PIPELINE_REQUIRED"):
        config.get("PIPELINE_REQUIRED", required=True)


def test_get_all_config_sections(clean_env):
    assert set(Config().get_all_config()) == {'database', 'dedup', 'scoring', 'lifecycle'}
